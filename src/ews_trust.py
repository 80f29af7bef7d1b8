"""
Exchange TLS Trust Policy

Decides which certificate validation failures are tolerated when talking to a
self-hosted Exchange server. Self-signed, expired and partial chains are
common on on-premise installations, as are certificates issued for a name
other than the one the administrator connects with.

The policy is evaluated per server: create_ssl_context() first connects
with a strict context. On failure it gathers every fault it can find before
consulting the policy, and returns a context relaxed only as far as the
policy allows.

OpenSSL stops at the first verification error, so a single handshake never
reports the full picture. The faults are collected from:
    - the strict handshake's error,
    - a second handshake that checks the chain but not the host name, or one
      that trusts the leaf itself and checks only the host name,
    - the leaf certificate's validity window and, when it is self-issued,
      its own signature (read with the 'cryptography' package).
"""

from __future__ import annotations

import enum
import socket
import ssl
from datetime import datetime, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature

from ews_common import ConnectionFailure


class PolicyErrors(enum.IntFlag):
    NONE = 0
    CERTIFICATE_NOT_AVAILABLE = 1
    NAME_MISMATCH = 2
    CHAIN_ERRORS = 4


class ChainStatus(enum.Enum):
    NO_ERROR = "no_error"
    NOT_TIME_VALID = "not_time_valid"
    UNTRUSTED_ROOT = "untrusted_root"
    PARTIAL_CHAIN = "partial_chain"
    REVOKED = "revoked"
    NOT_SIGNATURE_VALID = "not_signature_valid"
    INVALID = "invalid"


# OpenSSL X509_V_ERR_* codes
_CHAIN_STATUS_BY_VERIFY_CODE = {
    2: ChainStatus.PARTIAL_CHAIN,  # unable to get issuer certificate
    7: ChainStatus.NOT_SIGNATURE_VALID,
    9: ChainStatus.NOT_TIME_VALID,  # not yet valid
    10: ChainStatus.NOT_TIME_VALID,  # expired
    18: ChainStatus.UNTRUSTED_ROOT,  # depth zero self signed
    19: ChainStatus.UNTRUSTED_ROOT,  # self signed in chain
    20: ChainStatus.PARTIAL_CHAIN,  # unable to get local issuer
    21: ChainStatus.PARTIAL_CHAIN,  # unable to verify leaf signature
    23: ChainStatus.REVOKED,
}
_NAME_MISMATCH_VERIFY_CODES = {62, 64}


def accept_certificate(certificate, chain_statuses, policy_errors):
    """
    Return True if a TLS connection with these validation results should proceed.

    Args:
        certificate: Server certificate with subject and issuer attributes
            (a cryptography x509.Certificate), or None when unknown
        chain_statuses: Iterable of ChainStatus values reported for the chain
        policy_errors: PolicyErrors flags
    """
    if policy_errors == PolicyErrors.NONE:
        return True

    if policy_errors & PolicyErrors.CHAIN_ERRORS:
        self_signed = certificate is not None and certificate.subject == certificate.issuer
        for status in chain_statuses or ():
            if self_signed and status is ChainStatus.UNTRUSTED_ROOT:
                continue
            if status is ChainStatus.NOT_TIME_VALID:
                continue
            if status is ChainStatus.PARTIAL_CHAIN:
                continue
            if status is not ChainStatus.NO_ERROR:
                return False
        return True

    if policy_errors & PolicyErrors.NAME_MISMATCH:
        return True

    return False


def classify_verify_error(error):
    """
    Convert an ssl.SSLCertVerificationError into (chain_statuses, policy_errors).
    """
    code = getattr(error, "verify_code", None)
    if code in _NAME_MISMATCH_VERIFY_CODES:
        return [], PolicyErrors.NAME_MISMATCH
    status = _CHAIN_STATUS_BY_VERIFY_CODE.get(code, ChainStatus.INVALID)
    return [status], PolicyErrors.CHAIN_ERRORS


def load_certificate(der):
    """Parse a DER certificate, or return None if there is none or it can't be parsed."""
    if not der:
        return None
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError:
        return None


def leaf_statuses(certificate, now=None):
    """
    Chain faults that can be read off the leaf certificate alone.

    Covers the validity window and, for a self-issued certificate, its own
    signature. OpenSSL never checks either once it has reported an untrusted
    self-signed root.
    """
    now = now or datetime.now(timezone.utc)
    statuses = []
    if not certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc:
        statuses.append(ChainStatus.NOT_TIME_VALID)
    if certificate.subject == certificate.issuer:
        try:
            certificate.verify_directly_issued_by(certificate)
        except InvalidSignature:
            statuses.append(ChainStatus.NOT_SIGNATURE_VALID)
        except (ValueError, TypeError):
            # Key type cryptography can't verify; OpenSSL's verdict stands
            pass
    return statuses


def _handshake(context, host, port, timeout):
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as tls:
            return tls.getpeercert(binary_form=True)


def _verify_error_of(context, host, port, timeout):
    """Handshake with context. Returns the verification error, or None if the certificate verified."""
    try:
        _handshake(context, host, port, timeout)
    except ssl.SSLCertVerificationError as e:
        return e
    return None


def _unverified_context():
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def _chain_only_context():
    context = ssl.create_default_context()
    context.check_hostname = False
    return context


def _name_only_context(der):
    # The leaf is its own trust anchor, so only the host name check can fail
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.load_verify_locations(cadata=der)
    context.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
    return context


def collect_faults(host, port, timeout, verify_error):
    """
    Gather the policy inputs for a server whose strict handshake failed with verify_error.

    Returns:
        (certificate, chain_statuses, policy_errors). certificate is a
        cryptography x509.Certificate, or None when the server sent none.
    """
    chain_statuses, policy_errors = classify_verify_error(verify_error)

    der = _handshake(_unverified_context(), host, port, timeout)
    certificate = load_certificate(der)
    if certificate is None:
        return None, chain_statuses, policy_errors | PolicyErrors.CERTIFICATE_NOT_AVAILABLE

    if policy_errors & PolicyErrors.NAME_MISMATCH:
        chain_error = _verify_error_of(_chain_only_context(), host, port, timeout)
        if chain_error is not None:
            statuses, errors = classify_verify_error(chain_error)
            chain_statuses.extend(statuses)
            policy_errors |= errors
    else:
        name_error = _verify_error_of(_name_only_context(der), host, port, timeout)
        if name_error is not None and name_error.verify_code in _NAME_MISMATCH_VERIFY_CODES:
            policy_errors |= PolicyErrors.NAME_MISMATCH

    for status in leaf_statuses(certificate):
        if status not in chain_statuses:
            chain_statuses.append(status)
    if chain_statuses:
        policy_errors |= PolicyErrors.CHAIN_ERRORS
    return certificate, chain_statuses, policy_errors


def create_ssl_context(host, port=443, policy=accept_certificate, timeout=30):
    """
    Build the SSL context a session should use for host:port.

    Raises ConnectionFailure if the server can't be reached or the policy
    rejects its certificate.
    """
    strict = ssl.create_default_context()
    try:
        verify_error = _verify_error_of(strict, host, port, timeout)
        if verify_error is None:
            return strict
        certificate, chain_statuses, policy_errors = collect_faults(host, port, timeout, verify_error)
    except (OSError, ssl.SSLError) as e:
        raise ConnectionFailure(f"TLS handshake with {host}:{port} failed: {e}", last_error=e) from e

    if not policy(certificate, chain_statuses, policy_errors):
        message = getattr(verify_error, "verify_message", None) or str(verify_error)
        raise ConnectionFailure(
            f"Certificate for {host} rejected: {message}", last_error=verify_error
        ) from verify_error

    if policy_errors == PolicyErrors.NAME_MISMATCH:
        relaxed = ssl.create_default_context()
        relaxed.check_hostname = False
        return relaxed
    return _unverified_context()
