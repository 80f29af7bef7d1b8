"""Exchange Folder Survey Script.

Connects to an Exchange server over EWS, discovers the mailbox folder tree
(and optionally the public folder tree), resolves each folder's destination
and counts the messages received within a date window.

Configuration (Environment Variables):
    EWS_HOST          : Exchange host (e.g., mail.example.com)
    EWS_USERNAME      : Username (DOMAIN\\user or user@example.com)
    EWS_PASSWORD      : Password

    OAuth2 (Optional - Exchange Online, instead of password):
    OAUTH2_CLIENT_ID  : Azure AD application (client) ID

    EWS_MAPPING_FILE  : JSON folder mapping rules (optional)

Examples:
    export EWS_HOST="mail.example.com"
    export EWS_USERNAME="EXAMPLE\\jdoe"
    export EWS_PASSWORD="secretpassword"
    python3 count_exchange_folders.py --start-date 2023-01-01 --end-date 2023-12-31

    # Include public folders and folders the mapping ignores
    python3 count_exchange_folders.py --include-public --show-ignored
"""

import argparse
import os
import sys
from datetime import datetime, timezone
from typing import Optional

import ews_folders
import ews_session
import folder_mapping
from ews_common import AuthFailure, ConnectionFailure, FolderTreeTooDeep, safe_print
from ews_transport import EwsError

DEFAULT_START_DATE = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_date(value):
    """argparse type for YYYY-MM-DD or full ISO timestamps (UTC if no offset)."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}' (expected YYYY-MM-DD)") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def survey_folders(
    session,
    start_date,
    end_date,
    *,
    include_public=False,
    skip_empty=True,
    resolver=folder_mapping.apply_mappings,
    log_fn=None,
):
    """
    Discover and summarize the mailbox (and optionally public) folder trees.

    Returns:
        (inventory, ignored) lists of RemoteFolder
    """
    inventory = []
    ews_folders.discover(session, ews_folders.root_folder(session), inventory, skip_empty, log_fn=log_fn)
    if include_public:
        public_root = ews_folders.root_folder(session, public=True)
        ews_folders.discover(session, public_root, inventory, skip_empty, log_fn=log_fn)

    ignored = ews_folders.summarize(session, inventory, start_date, end_date, resolver=resolver, log_fn=log_fn)
    return inventory, ignored


def print_summary(inventory, ignored=None):
    total = 0
    print(f"{'Folder':<40} {'Destination':<30} {'Count':>10}")
    print("-" * 82)
    for folder in inventory:
        label = f"{folder.folder_path} (public)" if folder.is_public else folder.folder_path
        print(f"{label:<40} {folder.mapped_destination:<30} {folder.windowed_count:>10}")
        total += folder.windowed_count or 0
    for folder in ignored or []:
        print(f"{folder.folder_path:<40} {'(ignored)':<30} {folder.message_count:>10}")
    print("-" * 82)
    print(f"{'TOTAL':<40} {'':<30} {total:>10}")
    return total


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Survey Exchange folders and message counts over EWS.")

    default_host = os.getenv("EWS_HOST")
    default_user = os.getenv("EWS_USERNAME")
    default_pass = os.getenv("EWS_PASSWORD")
    default_client_id = os.getenv("OAUTH2_CLIENT_ID")

    parser.add_argument("--host", default=default_host, required=not default_host, help="Exchange host (or EWS_HOST)")
    parser.add_argument(
        "--user", default=default_user, required=not default_user, help="Username (or EWS_USERNAME)"
    )

    auth_group = parser.add_mutually_exclusive_group(required=not (default_pass or default_client_id))
    auth_group.add_argument("--pass", dest="password", default=default_pass, help="Password (or EWS_PASSWORD)")
    auth_group.add_argument(
        "--oauth2-client-id",
        dest="client_id",
        default=default_client_id,
        help="OAuth2 Client ID for Exchange Online (or OAUTH2_CLIENT_ID)",
    )

    parser.add_argument("--start-date", type=parse_date, default=DEFAULT_START_DATE, help="First received date")
    parser.add_argument("--end-date", type=parse_date, default=None, help="Last received date (default: now)")
    parser.add_argument("--include-public", action="store_true", help="Also survey the public folder tree")
    parser.add_argument("--include-empty", action="store_true", help="Keep folders without messages or subfolders")
    parser.add_argument("--show-ignored", action="store_true", help="List folders the mapping ignores")
    parser.add_argument(
        "--mapping-file", default=os.getenv("EWS_MAPPING_FILE"), help="JSON folder mapping rules (or EWS_MAPPING_FILE)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Print discovery progress")

    args = parser.parse_args(argv)
    end_date = args.end_date or datetime.now(timezone.utc)
    if end_date < args.start_date:
        print("Error: --end-date is before --start-date")
        sys.exit(1)

    resolver = folder_mapping.apply_mappings
    if args.mapping_file:
        try:
            resolver = folder_mapping.make_resolver(folder_mapping.load_mapping_rules(args.mapping_file))
        except (OSError, ValueError) as e:
            print(f"Error: Could not load mapping file: {e}")
            sys.exit(1)

    conf = ews_session.build_ews_conf(args.host, args.user, args.password, args.client_id)

    print("\n--- Configuration Summary ---")
    print(f"Host            : {args.host}")
    print(f"User            : {args.user}")
    print(f"Auth Method     : {ews_session.auth_description(conf)}")
    print(f"Date Range      : {args.start_date.date()} .. {end_date.date()}")
    print(f"Public Folders  : {'Yes' if args.include_public else 'No'}")
    print(f"Mapping Rules   : {args.mapping_file or 'default'}")
    print("-----------------------------\n")

    log_fn = safe_print if args.verbose else None
    try:
        print(f"Connecting to {args.host}...")
        session = ews_session.connect_from_conf(conf)
        print(f"Connected (server version {session.version}).")
        inventory, ignored = survey_folders(
            session,
            args.start_date,
            end_date,
            include_public=args.include_public,
            skip_empty=not args.include_empty,
            resolver=resolver,
            log_fn=log_fn,
        )
    except AuthFailure as e:
        print(f"Error: Authentication failed for {args.user}: {e}")
        sys.exit(1)
    except ConnectionFailure as e:
        print(f"Error: Could not connect to {args.host}: {e}")
        sys.exit(1)
    except (EwsError, FolderTreeTooDeep) as e:
        print(f"EWS Error: {e}")
        sys.exit(1)

    print_summary(inventory, ignored if args.show_ignored else None)


if __name__ == "__main__":
    main()
