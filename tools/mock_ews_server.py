"""
A minimal Exchange Web Services mock server for tests.

Understands just enough SOAP to serve GetFolder, FindFolder and FindItem
against an in-memory folder tree:

    {
        "folders": {
            "Inbox": {"messages": ["2023-01-05T10:00:00Z"], "folders": {"Sub": {...}}},
            "Empty": {},
        },
        "public": {"Global Public Folder Root": {"folders": {...}}},
    }

Each message is represented only by its received timestamp.
"""

import base64
import ssl
import threading
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from xml.sax.saxutils import escape, quoteattr

NS_SOAP = "http://schemas.xmlsoap.org/soap/envelope/"
NS_TYPES = "http://schemas.microsoft.com/exchange/services/2006/types"
NS_MESSAGES = "http://schemas.microsoft.com/exchange/services/2006/messages"
NS_ERRORS = "http://schemas.microsoft.com/exchange/services/2006/errors"

ROOT_ID = "root"
PUBLIC_ROOT_ID = "publicroot"
DISTINGUISHED_IDS = {"msgfolderroot": ROOT_ID, "publicfoldersroot": PUBLIC_ROOT_ID}


def _parse_ts(value):
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _local(tag):
    return tag.rsplit("}", 1)[-1]


def _envelope(body):
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<s:Envelope xmlns:s="{NS_SOAP}" xmlns:m="{NS_MESSAGES}" xmlns:t="{NS_TYPES}">'
        f"<s:Body>{body}</s:Body></s:Envelope>"
    )


def _fault(code, message):
    return _envelope(
        "<s:Fault>"
        f"<faultcode>s:Client</faultcode><faultstring>{escape(message)}</faultstring>"
        f'<detail><e:ResponseCode xmlns:e="{NS_ERRORS}">{code}</e:ResponseCode></detail>'
        "</s:Fault>"
    )


def _error_message(operation, code, message):
    return _envelope(
        f"<m:{operation}Response><m:ResponseMessages>"
        f'<m:{operation}ResponseMessage ResponseClass="Error">'
        f"<m:MessageText>{escape(message)}</m:MessageText><m:ResponseCode>{code}</m:ResponseCode>"
        f"</m:{operation}ResponseMessage></m:ResponseMessages></m:{operation}Response>"
    )


def _success(operation, inner):
    return _envelope(
        f"<m:{operation}Response><m:ResponseMessages>"
        f'<m:{operation}ResponseMessage ResponseClass="Success"><m:ResponseCode>NoError</m:ResponseCode>'
        f"{inner}</m:{operation}ResponseMessage></m:ResponseMessages></m:{operation}Response>"
    )


class MockEWSHandler(BaseHTTPRequestHandler):
    """Serves EWS requests against self.server.nodes."""

    def _send(self, status, body):
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/xml; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _authorized(self):
        users = self.server.users
        if users is None:
            return True
        header = self.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            return header[len("Bearer ") :] in self.server.tokens
        if not header.startswith("Basic "):
            return False
        try:
            user, _, password = base64.b64decode(header[len("Basic ") :]).decode("utf-8").partition(":")
        except ValueError:
            return False
        return users.get(user) == password

    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length) if length else b""

        if not self._authorized():
            self.send_response(401, "Unauthorized")
            self.send_header("WWW-Authenticate", 'Basic realm="mock"')
            self.send_header("Content-Length", "0")
            self.end_headers()
            return

        try:
            root = ET.fromstring(raw)
        except ET.ParseError:
            self._send(400, _fault("ErrorSchemaValidation", "Malformed request"))
            return

        version_el = root.find(f".//{{{NS_TYPES}}}RequestServerVersion")
        version = version_el.get("Version") if version_el is not None else None
        body = root.find(f"{{{NS_SOAP}}}Body")
        operation_el = list(body)[0] if body is not None and len(body) else None
        operation = _local(operation_el.tag) if operation_el is not None else None

        with self.server.lock:
            self.server.requests.append((operation, version))
            if self.server.accepted_versions is not None and version not in self.server.accepted_versions:
                self._send(500, _fault("ErrorInvalidServerVersion", "The specified server version is invalid."))
                return
            if self.server.busy_responses > 0:
                self.server.busy_responses -= 1
                self._send(500, _fault("ErrorServerBusy", "The server cannot service this request right now."))
                return

        handler = {
            "GetFolder": self._get_folder,
            "FindFolder": self._find_folder,
            "FindItem": self._find_item,
        }.get(operation)
        if handler is None:
            self._send(500, _fault("ErrorInvalidRequest", f"Unsupported operation {operation}"))
            return
        self._send(200, handler(operation_el))

    def _node(self, folder_id):
        return self.server.nodes.get(folder_id)

    def _get_folder(self, request):
        distinguished = request.find(f".//{{{NS_TYPES}}}DistinguishedFolderId")
        folder_id = DISTINGUISHED_IDS.get(distinguished.get("Id")) if distinguished is not None else None
        if folder_id is None or self._node(folder_id) is None:
            return _error_message("GetFolder", "ErrorFolderNotFound", "The specified folder could not be found.")
        return _success(
            "GetFolder",
            f"<m:Folders><t:Folder><t:FolderId Id={quoteattr(folder_id)} ChangeKey=\"AQ\"/></t:Folder></m:Folders>",
        )

    def _parent_id(self, request):
        parent = request.find(f".//{{{NS_MESSAGES}}}ParentFolderIds/{{{NS_TYPES}}}FolderId")
        return parent.get("Id") if parent is not None else None

    def _find_folder(self, request):
        node = self._node(self._parent_id(request))
        if node is None:
            return _error_message("FindFolder", "ErrorFolderNotFound", "The specified folder could not be found.")
        view = request.find(f"{{{NS_MESSAGES}}}IndexedPageFolderView")
        offset = int(view.get("Offset", "0")) if view is not None else 0
        max_entries = int(view.get("MaxEntriesReturned", "1000")) if view is not None else 1000
        max_entries = min(max_entries, self.server.max_page_size)

        children = node["children"]
        page = children[offset : offset + max_entries]
        includes_last = offset + len(page) >= len(children)
        folders = []
        for child_id in page:
            child = self.server.nodes[child_id]
            folders.append(
                "<t:Folder>"
                f"<t:FolderId Id={quoteattr(child_id)} ChangeKey=\"AQ\"/>"
                f"<t:DisplayName>{escape(child['name'])}</t:DisplayName>"
                f"<t:TotalCount>{len(child['messages'])}</t:TotalCount>"
                f"<t:ChildFolderCount>{len(child['children'])}</t:ChildFolderCount>"
                "<t:UnreadCount>0</t:UnreadCount>"
                "</t:Folder>"
            )
        return _success(
            "FindFolder",
            f'<m:RootFolder IndexedPagingOffset="{offset + len(page)}" TotalItemsInView="{len(children)}" '
            f'IncludesLastItemInRange="{"true" if includes_last else "false"}">'
            f"<t:Folders>{''.join(folders)}</t:Folders></m:RootFolder>",
        )

    def _find_item(self, request):
        node = self._node(self._parent_id(request))
        if node is None:
            return _error_message("FindItem", "ErrorFolderNotFound", "The specified folder could not be found.")

        lower = upper = None
        for element in request.iter():
            name = _local(element.tag)
            if name in ("IsGreaterThanOrEqualTo", "IsLessThanOrEqualTo"):
                constant = element.find(f".//{{{NS_TYPES}}}Constant")
                value = _parse_ts(constant.get("Value"))
                if name == "IsGreaterThanOrEqualTo":
                    lower = value
                else:
                    upper = value

        matching = [
            ts for ts in node["messages"] if (lower is None or ts >= lower) and (upper is None or ts <= upper)
        ]
        self.server.find_item_page_sizes.append(
            int(request.find(f"{{{NS_MESSAGES}}}IndexedPageItemView").get("MaxEntriesReturned"))
        )
        return _success(
            "FindItem",
            f'<m:RootFolder TotalItemsInView="{len(matching)}" IncludesLastItemInRange="true"><t:Items/></m:RootFolder>',
        )

    def log_message(self, _format, *_args):
        # Silence default HTTP server logging during tests.
        return


class MockEWSServer(HTTPServer):
    allow_reuse_address = True

    def __init__(self, address, data=None, accepted_versions=None, users=None, tokens=None, max_page_size=1000):
        super().__init__(address, MockEWSHandler)
        self.lock = threading.Lock()
        self.accepted_versions = set(accepted_versions) if accepted_versions is not None else None
        self.users = users
        self.tokens = set(tokens or ())
        self.max_page_size = max_page_size
        self.busy_responses = 0
        self.requests = []
        self.find_item_page_sizes = []
        self.nodes = {}
        data = data or {}
        self._add_tree(ROOT_ID, "Top of Information Store", data.get("folders", {}))
        if "public" in data:
            self._add_tree(PUBLIC_ROOT_ID, "Public Folders", data["public"])

    def _add_tree(self, folder_id, name, children, messages=None):
        self.nodes[folder_id] = {
            "name": name,
            "messages": [_parse_ts(ts) for ts in messages or []],
            "children": [],
        }
        for child_name, node in children.items():
            node = node or {}
            child_id = f"{folder_id}/{child_name}"
            self.nodes[folder_id]["children"].append(child_id)
            self._add_tree(child_id, child_name, node.get("folders", {}), node.get("messages"))

    def versions_tried(self):
        return [version for _, version in self.requests]


def start_server_thread(data=None, port=0, certfile=None, keyfile=None, **kwargs):
    """
    Start a MockEWSServer in a daemon thread. Returns (server, port).

    With certfile (and keyfile) the server speaks HTTPS using that certificate chain.
    """
    server = MockEWSServer(("localhost", port), data, **kwargs)
    if certfile:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile, keyfile)
        server.socket = context.wrap_socket(server.socket, server_side=True)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return server, server.server_address[1]
