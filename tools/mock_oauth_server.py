"""Mock of the Microsoft OpenID discovery endpoint used for tenant lookup."""

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

MOCK_TENANT_ID = "00000000-0000-0000-0000-000000000000"
UNKNOWN_DOMAIN = "unknown.example"


def _write_json(handler, status, payload):
    body = json.dumps(payload).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


class MockOAuthHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        path = urlparse(self.path).path
        if path.endswith("/.well-known/openid-configuration"):
            domain = path.strip("/").split("/")[0]
            if domain == UNKNOWN_DOMAIN:
                _write_json(self, 400, {"error": "invalid_tenant"})
                return
            _write_json(self, 200, {"issuer": f"https://login.microsoftonline.com/{MOCK_TENANT_ID}/v2.0"})
            return
        _write_json(self, 404, {"error": "not_found"})

    def log_message(self, _format, *_args):
        # Silence default HTTP server logging during tests.
        return


class MockOAuthServer(HTTPServer):
    allow_reuse_address = True


def start_server_thread(port=0):
    server = MockOAuthServer(("localhost", port), MockOAuthHandler)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return thread, server
