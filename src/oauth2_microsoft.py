"""
Microsoft OAuth2 Token Acquisition for Exchange Web Services

Acquires bearer tokens for Exchange Online EWS using the MSAL device code
flow. The tenant is auto-discovered from the mailbox's email domain.

Requires the 'msal' package: pip install msal
"""

import http.client
import json
import os
import re
import ssl
import urllib.parse

import msal

EWS_SCOPES = ["https://outlook.office365.com/EWS.AccessAsUser.All"]
DEFAULT_DISCOVERY_HOST = "login.microsoftonline.com"
DEFAULT_AUTHORITY_BASE = "https://login.microsoftonline.com"

_TENANT_RE = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

# Module-level caches
_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id


def _fetch_json(base, path, timeout=10):
    """GET a JSON document. base is a bare host (HTTPS) or an http(s):// URL."""
    if not base or any(ch in base for ch in "\r\n"):
        raise ValueError("Invalid host")
    if not path.startswith("/"):
        path = f"/{path}"

    use_https = True
    host = base
    if "://" in base:
        parsed = urllib.parse.urlparse(base)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        use_https = parsed.scheme == "https"
        host = parsed.hostname if not parsed.port else f"{parsed.hostname}:{parsed.port}"
        path = f"{parsed.path.rstrip('/')}{path}"

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_tenant(email):
    """
    Return the Microsoft tenant ID for an email address, or None.

    Reads the issuer from the domain's OpenID Connect discovery document.
    Results are cached per domain.
    """
    domain = email.split("@")[-1].strip().lower()
    if not domain:
        print("Error: Could not discover Microsoft tenant: missing email domain")
        return None
    if domain in _tenant_cache:
        return _tenant_cache[domain]

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    discovery_host = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or DEFAULT_DISCOVERY_HOST
    try:
        data = _fetch_json(discovery_host, path)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        print(f"Error: Could not discover Microsoft tenant for domain '{domain}': {e}")
        return None

    issuer = data.get("issuer", "")
    match = _TENANT_RE.search(issuer)
    if not match:
        print(f"Error: Could not extract tenant ID from issuer: {issuer}")
        return None
    _tenant_cache[domain] = match.group(1)
    return match.group(1)


def _get_app(client_id, tenant_id):
    cache_key = (client_id, tenant_id)
    app = _msal_app_cache.get(cache_key)
    if app is None:
        print(f"Discovered Microsoft tenant: {tenant_id}")
        authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or DEFAULT_AUTHORITY_BASE
        app = msal.PublicClientApplication(client_id, authority=f"{authority_base.rstrip('/')}/{tenant_id}")
        _msal_app_cache[cache_key] = app
    return app


def acquire_token(client_id, email):
    """
    Acquire an EWS access token for email, or return None.

    A cached account is refreshed silently; otherwise the user is walked
    through the device code flow.
    """
    tenant_id = discover_tenant(email)
    if not tenant_id:
        return None

    app = _get_app(client_id, tenant_id)

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(EWS_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=EWS_SCOPES)
    if "user_code" not in flow:
        print(f"Error: Could not initiate device flow: {flow.get('error_description', 'Unknown error')}")
        return None

    print(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    print(f"Error: Could not acquire token: {result.get('error_description', 'Unknown error')}")
    return None
