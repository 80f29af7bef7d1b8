"""
Folder Mapping

Resolves a source folder path (e.g. "Inbox\\Projects") to the destination
folder it should be migrated into. A blank destination means the folder is
ignored.

Rules are (pattern, destination) pairs tried in order; the first pattern that
matches the whole source path (case-insensitive) wins and its destination is
expanded with the match groups (\\1, \\g<name>).
"""

import json
import re

from ews_common import PATH_SEPARATOR, PROVIDER_EXCHANGE

# Exchange folders holding non-mail items (or proprietary data) that have no
# place in a mail store
EXCHANGE_SKIP_FOLDERS = (
    "Calendar",
    "Contacts",
    "Suggested Contacts",
    "Conversation History",
    "Tasks",
    "Notes",
    "Journal",
    "Sync Issues",
)

_SKIP_PATTERN = "(?:" + "|".join(re.escape(name) for name in EXCHANGE_SKIP_FOLDERS) + r")(?:\\.*)?"

DEFAULT_RULES = (
    (_SKIP_PATTERN, ""),
    ("Inbox", "INBOX"),
    (r"Inbox\\(.+)", r"INBOX\\\1"),
    ("(.+)", r"\1"),
)

DEST_SEPARATOR = "/"


def is_special_folder(folder_path):
    """True if the path is (or lives under) an Exchange system folder."""
    if not folder_path:
        return False
    return folder_path.split(PATH_SEPARATOR, 1)[0] in EXCHANGE_SKIP_FOLDERS


def _compile(rules):
    compiled = []
    for pattern, destination in rules:
        try:
            compiled.append((re.compile(pattern, re.IGNORECASE), destination))
        except re.error as e:
            raise ValueError(f"Invalid mapping pattern {pattern!r}: {e}") from e
    return compiled


_DEFAULT_COMPILED = _compile(DEFAULT_RULES)


def apply_mappings(folder_path, provider=PROVIDER_EXCHANGE, rules=None):
    """
    Return the destination folder for folder_path, or "" if it should be ignored.

    Args:
        folder_path: Source path, segments separated by "\\"
        provider: Source system tag (only "exchange" paths use "\\" separators)
        rules: Optional list of (pattern, destination); defaults to DEFAULT_RULES
    """
    compiled = _DEFAULT_COMPILED if rules is None else _compile(rules)
    for regex, destination in compiled:
        match = regex.fullmatch(folder_path or "")
        if match is None:
            continue
        resolved = match.expand(destination).strip()
        if provider == PROVIDER_EXCHANGE:
            resolved = resolved.replace(PATH_SEPARATOR, DEST_SEPARATOR)
        return resolved
    return ""


def load_mapping_rules(path):
    """
    Load mapping rules from a JSON file holding a list of
    {"pattern": ..., "destination": ...} objects.
    """
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Mapping file {path} is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise ValueError(f"Mapping file {path} must contain a list of rules")

    rules = []
    for i, entry in enumerate(data, start=1):
        if not isinstance(entry, dict) or not isinstance(entry.get("pattern"), str):
            raise ValueError(f"Mapping rule #{i} in {path} needs a string 'pattern'")
        destination = entry.get("destination") or ""
        if not isinstance(destination, str):
            raise ValueError(f"Mapping rule #{i} in {path} has a non-string 'destination'")
        rules.append((entry["pattern"], destination))
    _compile(rules)
    return rules


def make_resolver(rules):
    """Bind a rule list into a resolver(folder_path, provider) callable."""

    def resolver(folder_path, provider=PROVIDER_EXCHANGE):
        return apply_mappings(folder_path, provider, rules)

    return resolver
