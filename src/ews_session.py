"""
EWS Session Negotiation

Establishes an authenticated session against an Exchange server whose
version is unknown, by trying each supported protocol version in turn until
the server accepts one.
"""

import enum
import sys

import ews_trust
import oauth2_microsoft
from ews_common import AuthFailure, ConnectionFailure, safe_print
from ews_transport import SESSION_TIMEOUT_SECONDS, BindOutcome, EwsSession, build_service_url

# Newest / most capable first
EXCHANGE_VERSIONS = (
    "Exchange2013",
    "Exchange2010_SP2",
    "Exchange2010_SP1",
    "Exchange2010",
    "Exchange2007_SP1",
)


class NegotiationState(enum.Enum):
    TRYING = "trying"
    CONNECTED = "connected"
    FAILED = "failed"


def connect(
    hostname,
    username,
    password,
    *,
    oauth2_token=None,
    versions=EXCHANGE_VERSIONS,
    session_factory=EwsSession,
    log_fn=safe_print,
):
    """
    Connect to an Exchange server, negotiating the protocol version.

    Args:
        hostname: Exchange host (or an http(s):// URL for non-standard endpoints)
        username: Account name
        password: Account password (ignored when oauth2_token is given)
        oauth2_token: Optional bearer token for Exchange Online
        versions: Candidate versions, tried in order
        session_factory: Callable building a session; receives version, url,
            username, password, oauth2_token, timeout and trust_policy
        log_fn: Function used for warnings

    Returns:
        A session bound to the first version the server accepted.

    Raises:
        AuthFailure: the server rejected the credentials
        ConnectionFailure: the server could not be reached, failed, or rejected every version
    """
    try:
        url = build_service_url(hostname)
    except ValueError as e:
        raise ConnectionFailure(str(e), last_error=e) from e

    state = NegotiationState.TRYING
    attempt = 0
    session = None
    last_result = None
    while state is NegotiationState.TRYING:
        if attempt >= len(versions):
            state = NegotiationState.FAILED
            break

        version = versions[attempt]
        session = session_factory(
            version=version,
            url=url,
            username=username,
            password=password,
            oauth2_token=oauth2_token,
            timeout=SESSION_TIMEOUT_SECONDS,
            trust_policy=ews_trust.accept_certificate,
        )
        result = session.bind_root()
        last_result = result

        if result.outcome is BindOutcome.BOUND:
            state = NegotiationState.CONNECTED
        elif result.outcome is BindOutcome.VERSION_REJECTED:
            log_fn(f"Warning: {url} rejected version {version}: {result.message}")
            session.close()
            session = None
            attempt += 1
        elif result.outcome is BindOutcome.AUTH_REJECTED:
            log_fn(f"Error: Failed to bind to {url} as {username}: {result.message}")
            session.close()
            raise AuthFailure(result.message or f"Authentication failed for {username}") from result.error
        else:
            log_fn(f"Error: Failed to bind to {url}: {result.message}")
            session.close()
            raise ConnectionFailure(
                result.message or f"Failed to connect to {hostname}", last_error=result
            ) from result.error

    if state is NegotiationState.FAILED:
        cause = last_result.error if last_result is not None else None
        raise ConnectionFailure(
            f"Failed to connect to {hostname} with username {username}", last_error=last_result
        ) from cause
    return session


def build_ews_conf(host, user, password, client_id=None, label=None):
    """
    Build a standard EWS connection config dict.

    If client_id is provided, acquires an OAuth2 token (sys.exit(1) on failure).

    Returns:
        Dict with keys: host, user, password, oauth2_token, oauth2
    """
    oauth2_token = None
    oauth2_info = None

    if client_id:
        if label:
            print(f"Acquiring OAuth2 token for {label} (microsoft)...")
        else:
            print("Acquiring OAuth2 token (microsoft)...")
        oauth2_token = oauth2_microsoft.acquire_token(client_id, user)
        if not oauth2_token:
            print("Error: Failed to acquire OAuth2 token.")
            sys.exit(1)
        print("OAuth2 token acquired successfully.\n")
        oauth2_info = {"provider": "microsoft", "client_id": client_id, "email": user}

    return {
        "host": host,
        "user": user,
        "password": password,
        "oauth2_token": oauth2_token,
        "oauth2": oauth2_info,
    }


def connect_from_conf(conf, **kwargs):
    """Connect using a conf dict from build_ews_conf(). Extra kwargs go to connect()."""
    return connect(conf["host"], conf["user"], conf.get("password"), oauth2_token=conf.get("oauth2_token"), **kwargs)


def auth_description(conf):
    """Human-readable auth method for configuration summaries."""
    if conf.get("oauth2"):
        return f"OAuth2/{conf['oauth2']['provider']} (Bearer)"
    return "Basic (password)"
