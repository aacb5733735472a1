"""
Security module: device certificates and TLS contexts.

Every device owns a long-lived self-signed certificate whose common name is
its device id. Peers are trusted on first use and their certificate pinned;
later connections must present the very same certificate.
"""

import datetime
import hashlib
import logging
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from OpenSSL import SSL

from config import APP_NAME

logger = logging.getLogger(__name__)

CERTIFICATE_VALIDITY = datetime.timedelta(days=3650)


class Certificate:
    """A certificate/key pair stored as PEM files."""

    def __init__(self, cert_path: Path, key_path: Path):
        self.cert_path = Path(cert_path)
        self.key_path = Path(key_path)
        self.pem = self.cert_path.read_text()
        self._x509 = x509.load_pem_x509_certificate(self.pem.encode("ascii"))

    @property
    def der(self) -> bytes:
        return self._x509.public_bytes(serialization.Encoding.DER)

    @property
    def common_name(self) -> str:
        attrs = self._x509.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return attrs[0].value if attrs else ""

    @property
    def fingerprint(self) -> str:
        return certificate_fingerprint(self.der)


def generate_certificate(
    common_name: str,
    not_valid_before: datetime.datetime | None = None,
    validity: datetime.timedelta = CERTIFICATE_VALIDITY,
) -> tuple[bytes, bytes]:
    """
    Generate a self-signed EC certificate.

    The certificate is valid from ``not_valid_before`` (one day ago by
    default) for ``validity``.

    Returns:
        (certificate_pem, private_key_pem)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, APP_NAME),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, APP_NAME),
    ])
    if not_valid_before is None:
        now = datetime.datetime.now(datetime.timezone.utc)
        not_valid_before = now - datetime.timedelta(days=1)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_valid_before)
        .not_valid_after(not_valid_before + validity)
        .sign(private_key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def load_or_generate_certificate(
    cert_path: Path, key_path: Path, common_name: str
) -> Certificate:
    """Load the certificate at ``cert_path`` or create one for ``common_name``."""
    if cert_path.exists() and key_path.exists():
        try:
            return Certificate(cert_path, key_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load certificate {cert_path}: {e}. Generating new one.")

    cert_pem, key_pem = generate_certificate(common_name)
    key_path.write_bytes(key_pem)
    key_path.chmod(0o600)
    cert_path.write_bytes(cert_pem)
    logger.info(f"Generated certificate for {common_name}")
    return Certificate(cert_path, key_path)


def pem_to_der(pem: str) -> bytes:
    cert = x509.load_pem_x509_certificate(pem.encode("ascii"))
    return cert.public_bytes(serialization.Encoding.DER)


def der_to_pem(der: bytes) -> str:
    cert = x509.load_der_x509_certificate(der)
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def certificates_match(pinned_pem: str, presented_der: bytes | None) -> bool:
    """Whether the presented certificate is byte-identical to the pinned one."""
    if not presented_der:
        return False

    try:
        return pem_to_der(pinned_pem) == presented_der
    except ValueError:
        logger.warning("Pinned certificate could not be parsed")
        return False


def certificate_fingerprint(der: bytes) -> str:
    digest = hashlib.sha256(der).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def _accept_any_certificate(connection, certificate, errno, depth, ok) -> bool:
    return True


def create_tls_context(certificate: Certificate) -> SSL.Context:
    """
    Create a TLS context for either side of a channel.

    Both roles present their own certificate and require one from the peer.
    Any certificate is accepted during the handshake, expired or
    self-signed; the caller compares it against the pinned certificate once
    the handshake completes.
    """
    ctx = SSL.Context(SSL.TLS_METHOD)
    ctx.set_min_proto_version(SSL.TLS1_2_VERSION)
    ctx.use_certificate_file(str(certificate.cert_path))
    ctx.use_privatekey_file(str(certificate.key_path))
    ctx.check_privatekey()
    ctx.set_verify(
        SSL.VERIFY_PEER | SSL.VERIFY_FAIL_IF_NO_PEER_CERT,
        _accept_any_certificate,
    )
    return ctx
