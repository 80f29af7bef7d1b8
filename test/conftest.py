"""
Shared pytest fixtures and utilities for the Exchange folder tools tests.
"""

import os
import sys
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_certificates import make_ca, write_ca_file, write_pem_files
from mock_ews_server import start_server_thread
from mock_oauth_server import start_server_thread as start_oauth_server_thread


@pytest.fixture
def mock_ews_server():
    """
    Factory fixture that starts mock EWS servers.
    Returns (server, host_url) where host_url can be passed straight to connect().
    Automatically shuts the servers down after the test.
    """
    servers = []

    def _create(data=None, **kwargs):
        server, port = start_server_thread(data, **kwargs)
        servers.append(server)
        return server, f"http://localhost:{port}"

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def mock_ews_tls_server(tmp_path):
    """
    Factory fixture that starts HTTPS mock EWS servers.
    Takes an Issued server certificate (see mock_certificates) and optional chain
    certificates. Returns (server, host_url).
    """
    servers = []

    def _create(issued, data=None, chain=(), **kwargs):
        directory = tmp_path / f"tls-server-{len(servers)}"
        directory.mkdir()
        certfile, keyfile = write_pem_files(directory, issued, chain)
        server, port = start_server_thread(data, certfile=certfile, keyfile=keyfile, **kwargs)
        servers.append(server)
        return server, f"https://localhost:{port}"

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def trusted_ca(tmp_path, monkeypatch):
    """A throwaway CA that ssl.create_default_context() trusts for the duration of the test."""
    ca = make_ca()
    monkeypatch.setenv("SSL_CERT_FILE", write_ca_file(tmp_path, ca))
    return ca


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@contextmanager
def temp_argv(args):
    original = sys.argv[:]
    sys.argv = list(args)
    try:
        yield
    finally:
        sys.argv = original


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


@pytest.fixture
def mock_oauth_server():
    """Starts a mock OAuth2 server for the tenant discovery endpoint."""
    thread, server = start_oauth_server_thread(0)
    host, port = server.server_address
    base_url = f"http://{host}:{port}"

    yield base_url

    server.shutdown()
    thread.join(timeout=2)


__all__ = [
    "mock_ews_server",
    "mock_ews_tls_server",
    "trusted_ca",
    "mock_oauth_server",
    "temp_env",
    "temp_argv",
]
