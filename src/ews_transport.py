"""
EWS Transport

A minimal Exchange Web Services SOAP client covering what folder discovery
needs: binding a distinguished folder, listing child folders and counting
items received within a date window.

Each EwsSession is bound to one server version, one set of credentials and
one service URL. TLS trust is decided per session through an injected policy
(see ews_trust).
"""

from __future__ import annotations

import base64
import enum
import http.client
import ssl
import time
import urllib.parse
import xml.etree.ElementTree as ET
from collections import namedtuple
from datetime import timezone
from xml.sax.saxutils import quoteattr

import ews_trust
from ews_common import DISTINGUISHED_MSG_ROOT, ConnectionFailure, safe_print

SERVICE_PATH = "/EWS/Exchange.asmx"
SESSION_TIMEOUT_SECONDS = 30 * 60
FIND_FOLDER_PAGE_SIZE = 1000

NS_SOAP = "http://schemas.xmlsoap.org/soap/envelope/"
NS_TYPES = "http://schemas.microsoft.com/exchange/services/2006/types"
NS_MESSAGES = "http://schemas.microsoft.com/exchange/services/2006/messages"

ERROR_SERVER_BUSY = "ErrorServerBusy"
VERSION_ERROR_CODES = frozenset({"ErrorInvalidServerVersion", "ErrorIncorrectSchemaVersion"})

_T = f"{{{NS_TYPES}}}"
_M = f"{{{NS_MESSAGES}}}"

ChildFolder = namedtuple("ChildFolder", ["folder_id", "display_name", "total_count", "child_folder_count"])


class BindOutcome(enum.Enum):
    BOUND = "bound"
    VERSION_REJECTED = "version_rejected"
    AUTH_REJECTED = "auth_rejected"
    FAILED = "failed"


# error: the exception behind a failed bind, if any
BindResult = namedtuple("BindResult", ["outcome", "folder_id", "message", "error"], defaults=(None,))


class EwsError(Exception):
    """An EWS request completed but the server reported an error."""

    def __init__(self, code, message, http_status=None):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.http_status = http_status


class EwsAuthError(EwsError):
    pass


def build_service_url(hostname):
    """
    Derive the EWS endpoint from a hostname.

    Plain hostnames get "https://<host>/EWS/Exchange.asmx". A host given with an
    explicit http:// or https:// scheme (and optional port) keeps its scheme.
    """
    if not hostname or any(ch in hostname for ch in "\r\n"):
        raise ValueError(f"Invalid Exchange host: {hostname!r}")
    if "://" in hostname:
        parsed = urllib.parse.urlparse(hostname)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
            raise ValueError(f"Unsupported Exchange host URL: {hostname}")
        netloc = parsed.hostname if not parsed.port else f"{parsed.hostname}:{parsed.port}"
        path = parsed.path.rstrip("/") or SERVICE_PATH
        return f"{parsed.scheme.lower()}://{netloc}{path}"
    if "/" in hostname:
        raise ValueError(f"Invalid Exchange host: {hostname!r}")
    return f"https://{hostname}{SERVICE_PATH}"


def format_ews_datetime(value):
    """Format a datetime as an EWS UTC timestamp. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _envelope(version, body):
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{NS_SOAP}" xmlns:t="{NS_TYPES}" xmlns:m="{NS_MESSAGES}">'
        f"<soap:Header><t:RequestServerVersion Version={quoteattr(version)}/></soap:Header>"
        f"<soap:Body>{body}</soap:Body>"
        "</soap:Envelope>"
    ).encode("utf-8")


def _get_folder_body(distinguished_id):
    return (
        "<m:GetFolder>"
        "<m:FolderShape><t:BaseShape>IdOnly</t:BaseShape></m:FolderShape>"
        f"<m:FolderIds><t:DistinguishedFolderId Id={quoteattr(distinguished_id)}/></m:FolderIds>"
        "</m:GetFolder>"
    )


def _find_folder_body(folder_id, offset, page_size):
    return (
        '<m:FindFolder Traversal="Shallow">'
        "<m:FolderShape><t:BaseShape>Default</t:BaseShape></m:FolderShape>"
        f'<m:IndexedPageFolderView MaxEntriesReturned="{page_size}" Offset="{offset}" BasePoint="Beginning"/>'
        f"<m:ParentFolderIds><t:FolderId Id={quoteattr(folder_id)}/></m:ParentFolderIds>"
        "</m:FindFolder>"
    )


def _find_item_body(folder_id, start, end, page_size):
    def _bound(op, value):
        return (
            f"<t:{op}>"
            '<t:FieldURI FieldURI="item:DateTimeReceived"/>'
            f'<t:FieldURIOrConstant><t:Constant Value="{format_ews_datetime(value)}"/></t:FieldURIOrConstant>'
            f"</t:{op}>"
        )

    return (
        '<m:FindItem Traversal="Shallow">'
        "<m:ItemShape><t:BaseShape>IdOnly</t:BaseShape></m:ItemShape>"
        f'<m:IndexedPageItemView MaxEntriesReturned="{page_size}" Offset="0" BasePoint="Beginning"/>'
        "<m:Restriction><t:And>"
        f"{_bound('IsGreaterThanOrEqualTo', start)}{_bound('IsLessThanOrEqualTo', end)}"
        "</t:And></m:Restriction>"
        f"<m:ParentFolderIds><t:FolderId Id={quoteattr(folder_id)}/></m:ParentFolderIds>"
        "</m:FindItem>"
    )


def _parse_xml(body):
    try:
        return ET.fromstring(body)
    except ET.ParseError:
        return None


def _local_name(tag):
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _response_error(root):
    """Return (code, message) of the first error in a SOAP response, or None."""
    if root is None:
        return None
    # Faults put ResponseCode in the errors namespace, response messages in messages
    code = None
    message = ""
    for element in root.iter():
        name = _local_name(element.tag)
        if name == "ResponseCode" and code is None and element.text and element.text.strip() != "NoError":
            code = element.text.strip()
        elif name == "MessageText" and not message and element.text:
            message = element.text.strip()
    fault = root.find(f".//{{{NS_SOAP}}}Fault")
    fault_string = (fault.findtext("faultstring") or "").strip() if fault is not None else ""
    if code:
        return code, message or fault_string
    if fault is not None:
        return "SoapFault", fault_string
    return None


def _int_text(element, tag, default=0):
    text = element.findtext(f"{_T}{tag}")
    try:
        return int(text) if text is not None else default
    except ValueError:
        return default


class EwsSession:
    """An authenticated, version-bound handle on an Exchange Web Services endpoint."""

    def __init__(
        self,
        version,
        url,
        username,
        password=None,
        oauth2_token=None,
        timeout=SESSION_TIMEOUT_SECONDS,
        trust_policy=None,
        max_retries=3,
        initial_wait=5,
        log_fn=safe_print,
    ):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError(f"Invalid EWS URL: {url}")
        self._version = version
        self._url = url
        self._username = username
        self._password = password
        self._oauth2_token = oauth2_token
        self._timeout = timeout
        self._trust_policy = trust_policy
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._scheme = parsed.scheme
        self._host = parsed.hostname
        self._port = parsed.port or (443 if parsed.scheme == "https" else 80)
        self._path = parsed.path or SERVICE_PATH
        self._ssl_context = None

    @property
    def version(self):
        return self._version

    @property
    def url(self):
        return self._url

    @property
    def username(self):
        return self._username

    @property
    def timeout(self):
        return self._timeout

    def __repr__(self):
        return f"EwsSession(version={self._version!r}, url={self._url!r}, username={self._username!r})"

    def _auth_header(self):
        if self._oauth2_token:
            return f"Bearer {self._oauth2_token}"
        raw = f"{self._username}:{self._password or ''}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def _connection(self):
        if self._scheme == "http":
            return http.client.HTTPConnection(self._host, self._port, timeout=self._timeout)
        if self._ssl_context is None:
            if self._trust_policy is not None:
                self._ssl_context = ews_trust.create_ssl_context(self._host, self._port, self._trust_policy)
            else:
                self._ssl_context = ssl.create_default_context()
        return http.client.HTTPSConnection(self._host, self._port, timeout=self._timeout, context=self._ssl_context)

    def _post_once(self, payload):
        conn = self._connection()
        try:
            conn.request(
                "POST",
                self._path,
                body=payload,
                headers={
                    "Content-Type": "text/xml; charset=utf-8",
                    "Accept": "text/xml",
                    "Authorization": self._auth_header(),
                },
            )
            response = conn.getresponse()
            body = response.read()
        except (OSError, http.client.HTTPException) as e:
            raise ConnectionFailure(f"EWS request to {self._url} failed: {e}", last_error=e) from e
        finally:
            conn.close()

        if response.status in (401, 403):
            raise EwsAuthError("Unauthorized", f"HTTP {response.status} {response.reason}", response.status)

        root = _parse_xml(body)
        error = _response_error(root)
        if error:
            code, message = error
            raise EwsError(code, message, response.status)
        if response.status != 200 or root is None:
            raise EwsError("HttpError", f"Unexpected HTTP status {response.status}", response.status)
        return root

    def _post(self, body):
        """Send a SOAP request, retrying ErrorServerBusy with exponential backoff."""
        payload = _envelope(self._version, body)
        for attempt in range(self._max_retries):
            try:
                return self._post_once(payload)
            except EwsError as e:
                if e.code != ERROR_SERVER_BUSY or attempt + 1 >= self._max_retries:
                    raise
                wait = self._initial_wait * (2**attempt)  # 5s, 10s, 20s
                self._log_fn(f"Server busy, retrying in {wait}s... (attempt {attempt + 1}/{self._max_retries})")
                time.sleep(wait)

    def get_folder_id(self, distinguished_id):
        root = self._post(_get_folder_body(distinguished_id))
        folder_id = root.find(f".//{_T}FolderId")
        if folder_id is None or not folder_id.get("Id"):
            raise EwsError("ErrorFolderNotFound", f"No folder id returned for '{distinguished_id}'")
        return folder_id.get("Id")

    def bind_root(self, distinguished_id=DISTINGUISHED_MSG_ROOT):
        """
        Bind a well-known folder to confirm the server accepts this session.

        Never raises; the outcome tells the negotiator what to do next.
        """
        try:
            folder_id = self.get_folder_id(distinguished_id)
        except EwsAuthError as e:
            return BindResult(BindOutcome.AUTH_REJECTED, None, str(e), e)
        except EwsError as e:
            if e.code in VERSION_ERROR_CODES:
                return BindResult(BindOutcome.VERSION_REJECTED, None, str(e), e)
            return BindResult(BindOutcome.FAILED, None, str(e), e)
        except ConnectionFailure as e:
            return BindResult(BindOutcome.FAILED, None, str(e), e)
        return BindResult(BindOutcome.BOUND, folder_id, None)

    def list_child_folders(self, folder_id):
        """Return the immediate child folders of folder_id as ChildFolder tuples."""
        children = []
        offset = 0
        while True:
            root = self._post(_find_folder_body(folder_id, offset, FIND_FOLDER_PAGE_SIZE))
            root_folder = root.find(f".//{_M}RootFolder")
            if root_folder is None:
                break
            folders = root_folder.find(f"{_T}Folders")
            page = list(folders) if folders is not None else []
            for element in page:
                id_element = element.find(f"{_T}FolderId")
                if id_element is None:
                    continue
                children.append(
                    ChildFolder(
                        folder_id=id_element.get("Id"),
                        display_name=element.findtext(f"{_T}DisplayName") or "",
                        total_count=_int_text(element, "TotalCount"),
                        child_folder_count=_int_text(element, "ChildFolderCount"),
                    )
                )
            if root_folder.get("IncludesLastItemInRange", "true").lower() == "true" or not page:
                break
            offset += len(page)
        return children

    def count_items_in_range(self, folder_id, start, end, page_size=20):
        """Count items in folder_id whose DateTimeReceived lies within [start, end]."""
        root = self._post(_find_item_body(folder_id, start, end, page_size))
        root_folder = root.find(f".//{_M}RootFolder")
        if root_folder is None:
            raise EwsError("ErrorInvalidResponse", "FindItem response has no RootFolder")
        try:
            return int(root_folder.get("TotalItemsInView", "0"))
        except ValueError as e:
            raise EwsError("ErrorInvalidResponse", f"Bad TotalItemsInView: {e}") from e

    def close(self):
        self._ssl_context = None
