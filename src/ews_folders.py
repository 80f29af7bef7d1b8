"""
EWS Folder Discovery and Summary

discover() walks the remote folder tree below a root folder and appends one
RemoteFolder per interesting node to a caller-owned inventory list.
summarize() then resolves each folder's destination and counts the messages
received within a date window, purging folders that have no destination.
"""

from __future__ import annotations

import folder_mapping
from ews_common import (
    DISTINGUISHED_MSG_ROOT,
    DISTINGUISHED_PUBLIC_ROOT,
    PATH_SEPARATOR,
    PROVIDER_EXCHANGE,
    PUBLIC_ROOT_NAME,
    FolderTreeTooDeep,
    RemoteFolder,
)

# Folder depth reported by the server is untrusted input
MAX_FOLDER_DEPTH = 64
SUMMARY_PAGE_SIZE = 20

_PUBLIC_ROOT_PREFIX = PUBLIC_ROOT_NAME + PATH_SEPARATOR


def _log(log_fn, message):
    if log_fn is not None:
        log_fn(message)


def root_folder(session, public=False):
    """Bind the mailbox root (or the public folder root) as a discovery starting point."""
    distinguished_id = DISTINGUISHED_PUBLIC_ROOT if public else DISTINGUISHED_MSG_ROOT
    return RemoteFolder(folder_id=session.get_folder_id(distinguished_id), folder_path="", is_public=public)


def child_path(parent, display_name):
    path = f"{parent.folder_path}{PATH_SEPARATOR}{display_name}" if parent.folder_path else display_name
    if parent.is_public and path.startswith(_PUBLIC_ROOT_PREFIX):
        path = path[len(_PUBLIC_ROOT_PREFIX) :]
    return path


def discover(session, root, inventory, skip_empty=True, *, max_depth=MAX_FOLDER_DEPTH, log_fn=None):
    """
    Append every folder below root to inventory, parents before their children.

    Args:
        session: Remote session providing list_child_folders(folder_id)
        root: RemoteFolder to start from (see root_folder())
        inventory: List the discovered RemoteFolder records are appended to
        skip_empty: Skip folders with no messages and no subfolders
        max_depth: Deepest level below root that may be listed
        log_fn: Optional function for debug output

    Raises:
        FolderTreeTooDeep: the tree is deeper than max_depth
    """
    _log(log_fn, f"Looking for sub folders of '{root.folder_path}'")
    # Each frame is (folder, iterator over its children, depth)
    stack = [(root, iter(session.list_child_folders(root.folder_id)), 1)]
    while stack:
        parent, children, depth = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            continue

        path = child_path(parent, child.display_name)
        if skip_empty and child.total_count == 0 and child.child_folder_count == 0:
            _log(log_fn, f"Skipping folder {path}, no messages, no subfolders.")
            continue

        _log(log_fn, f"Found folder {path}, {child.total_count} messages in total.")
        folder = RemoteFolder(
            folder_id=child.folder_id,
            folder_path=path,
            message_count=child.total_count,
            is_public=parent.is_public,
            display_name=child.display_name,
            child_folder_count=child.child_folder_count,
        )
        # The public root is an anchor, not a folder anyone migrates
        if not parent.is_public or child.display_name != PUBLIC_ROOT_NAME:
            inventory.append(folder)

        if child.child_folder_count > 0:
            if depth >= max_depth:
                raise FolderTreeTooDeep(f"Folder '{path}' is nested more than {max_depth} levels deep")
            _log(log_fn, f"Looking for sub folders of '{path}'")
            stack.append((folder, iter(session.list_child_folders(folder.folder_id)), depth + 1))

    return inventory


def summarize(
    session,
    inventory,
    start_date,
    end_date,
    purge_ignored=True,
    *,
    resolver=folder_mapping.apply_mappings,
    log_fn=None,
):
    """
    Map each folder to its destination and count its messages received in [start_date, end_date].

    Folders the resolver maps to a blank destination are removed from
    inventory when purge_ignored is set.

    Returns:
        List of the folders that had no destination.
    """
    _log(log_fn, f"Getting mails from {start_date} to {end_date}")
    ignored = []
    for folder in inventory:
        destination = resolver(folder.folder_path, PROVIDER_EXCHANGE)
        if destination and destination.strip():
            folder.assign_destination(destination)
            folder.windowed_count = session.count_items_in_range(
                folder.folder_id, start_date, end_date, page_size=SUMMARY_PAGE_SIZE
            )
            _log(log_fn, f"{folder.folder_path} => {folder.mapped_destination}, {folder.windowed_count} messages.")
        else:
            ignored.append(folder)

    if purge_ignored:
        for folder in ignored:
            inventory.remove(folder)
    return ignored
