"""
Test certificates for the TLS mock EWS server.

Builds a throwaway CA, CA-issued and self-signed server certificates with
EC keys, including expired certificates and ones with a broken signature.
"""

from collections import namedtuple
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

Issued = namedtuple("Issued", ["certificate", "key"])


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _validity(expired):
    now = datetime.now(timezone.utc)
    if expired:
        return now - timedelta(days=60), now - timedelta(days=30)
    return now - timedelta(days=1), now + timedelta(days=30)


def make_ca(common_name="Mock EWS Root CA"):
    key = ec.generate_private_key(ec.SECP256R1())
    not_before, not_after = _validity(expired=False)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return Issued(certificate, key)


def make_server_certificate(hostname, issuer=None, expired=False):
    """
    Issue a server certificate for hostname.

    Args:
        hostname: DNS name placed in the subject CN and the SAN
        issuer: Issued CA to sign with; None makes the certificate self-signed
        expired: Put the validity window entirely in the past
    """
    key = ec.generate_private_key(ec.SECP256R1())
    signing_key = issuer.key if issuer else key
    issuer_name = issuer.certificate.subject if issuer else _name(hostname)
    not_before, not_after = _validity(expired)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(_name(hostname))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()), critical=False
        )
        .sign(signing_key, hashes.SHA256())
    )
    return Issued(certificate, key)


def corrupt_signature(issued):
    """Return a copy of issued whose certificate signature no longer verifies."""
    der = issued.certificate.public_bytes(serialization.Encoding.DER)
    # The signature value is the last field of the certificate
    tampered = der[:-1] + bytes([der[-1] ^ 0x01])
    return Issued(x509.load_der_x509_certificate(tampered), issued.key)


def to_der(issued):
    return issued.certificate.public_bytes(serialization.Encoding.DER)


def write_pem_files(directory, issued, chain=()):
    """
    Write issued (plus any chain certificates) to directory.

    Returns (certfile, keyfile) paths suitable for SSLContext.load_cert_chain().
    """
    certfile = directory / "server-cert.pem"
    keyfile = directory / "server-key.pem"
    pem = issued.certificate.public_bytes(serialization.Encoding.PEM)
    for extra in chain:
        pem += extra.certificate.public_bytes(serialization.Encoding.PEM)
    certfile.write_bytes(pem)
    keyfile.write_bytes(
        issued.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(certfile), str(keyfile)


def write_ca_file(directory, ca):
    path = directory / "ca.pem"
    path.write_bytes(ca.certificate.public_bytes(serialization.Encoding.PEM))
    return str(path)
