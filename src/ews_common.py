"""
EWS Common Utilities

Shared constants, error types and the folder record used by the Exchange
discovery, summary and counting scripts.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

# Exchange folder path separator (ancestors joined as "Top\\Middle\\Leaf")
PATH_SEPARATOR = "\\"

# Display name Exchange gives the public folder tree root. Public folder paths
# repeat it as their first segment, so it is stripped from descendant paths.
PUBLIC_ROOT_NAME = "Global Public Folder Root"

# Distinguished folder ids used to anchor discovery
DISTINGUISHED_MSG_ROOT = "msgfolderroot"
DISTINGUISHED_PUBLIC_ROOT = "publicfoldersroot"

# Source system tag handed to the folder mapping resolver
PROVIDER_EXCHANGE = "exchange"

STATUS_AUTH_FAILURE = "AuthFailure"
STATUS_CONNECTION_ERROR = "ConnectionError"

_print_lock = threading.Lock()


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


class MessageProcessorError(Exception):
    """Base error for the Exchange migration tools. ``status`` names the failure kind."""

    status = None

    def __init__(self, message, status=None):
        super().__init__(message)
        if status is not None:
            self.status = status


class ConnectionFailure(MessageProcessorError, ConnectionError):
    """Network, version or unspecified failure reaching the Exchange server."""

    status = STATUS_CONNECTION_ERROR

    def __init__(self, message, last_error=None):
        super().__init__(message)
        self.last_error = last_error


class AuthFailure(MessageProcessorError):
    """The server rejected the supplied credentials. Never retried."""

    status = STATUS_AUTH_FAILURE


class FolderTreeTooDeep(MessageProcessorError):
    """The server reported a folder tree deeper than the discovery guard allows."""


@dataclass(eq=False)
class RemoteFolder:
    """One folder node of the remote tree.

    ``mapped_destination`` and ``windowed_count`` stay ``None`` until the
    summary pass fills them in.
    """

    folder_id: str
    folder_path: str = ""
    message_count: int = 0
    is_public: bool = False
    display_name: str = ""
    child_folder_count: int = 0
    mapped_destination: Optional[str] = None
    windowed_count: Optional[int] = None

    def assign_destination(self, destination: str) -> None:
        if self.mapped_destination is not None:
            raise ValueError(f"Folder '{self.folder_path}' is already mapped to '{self.mapped_destination}'")
        self.mapped_destination = destination
