"""
Private key generation and CSR construction.

Keys are always returned as unencrypted PKCS8 PEM bytes so they can be
written to storage without further conversion.
"""
import logging
from enum import Enum
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import NameOID

from .errors import UnsupportedAlgorithm


logger = logging.getLogger(__name__)


class KeyType(str, Enum):
    """Supported private key algorithms."""

    ED25519 = "ed25519"
    P256 = "p256"
    P384 = "p384"
    RSA2048 = "rsa2048"
    RSA4096 = "rsa4096"
    RSA8192 = "rsa8192"


_RSA_SIZES = {
    KeyType.RSA2048: 2048,
    KeyType.RSA4096: 4096,
    KeyType.RSA8192: 8192,
}

_EC_CURVES = {
    KeyType.P256: ec.SECP256R1,
    KeyType.P384: ec.SECP384R1,
}

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]


def resolve_key_type(value: Union[str, KeyType]) -> KeyType:
    """
    Resolve a configured key type name.

    Raises:
        UnsupportedAlgorithm: If the value is not one of the supported types
    """
    if isinstance(value, KeyType):
        return value
    try:
        return KeyType(str(value).strip().lower())
    except ValueError:
        supported = ", ".join(k.value for k in KeyType)
        raise UnsupportedAlgorithm(
            f"unsupported key_type: {value} (expected one of: {supported})"
        ) from None


def generate_private_key(key_type: KeyType) -> bytes:
    """
    Generate a new private key.

    Args:
        key_type: The algorithm to use

    Returns:
        PEM-encoded PKCS8 private key
    """
    if not isinstance(key_type, KeyType):
        raise UnsupportedAlgorithm(f"unsupported key_type: {key_type}")

    if key_type in _RSA_SIZES:
        key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=_RSA_SIZES[key_type],
        )
    elif key_type in _EC_CURVES:
        key = ec.generate_private_key(_EC_CURVES[key_type]())
    else:
        key = ed25519.Ed25519PrivateKey.generate()

    logger.debug("[ACME-KEYS] Generated %s private key", key_type.value)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(key_pem: bytes) -> PrivateKey:
    """Load an unencrypted PEM private key."""
    return serialization.load_pem_private_key(key_pem, password=None)


def build_csr(key_pem: bytes, domains: list[str]) -> bytes:
    """
    Build a DER-encoded CSR for the given domains.

    The first domain becomes the subject CN, all domains go into the SAN
    extension.
    """
    if not domains:
        raise ValueError("at least one domain is required for a CSR")

    key = load_private_key(key_pem)
    # Ed25519 signatures carry their own digest
    algorithm = None if isinstance(key, ed25519.Ed25519PrivateKey) else hashes.SHA256()

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(key, algorithm)
    )
    return csr.public_bytes(serialization.Encoding.DER)
