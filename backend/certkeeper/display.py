"""
Certificate display helpers.

Formats stored PEM files for the terminal. Stateless: everything is read
from the paths the certificate storage exposes.
"""
import logging
from datetime import datetime
from typing import TextIO

from cryptography import x509
from cryptography.x509.oid import NameOID

from .errors import ResourceError
from .storage import CertificateStorage


logger = logging.getLogger(__name__)


def _rfc3339(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def describe_chain(payload: bytes) -> list[str]:
    """
    One "CN->notBefore->notAfter" line per certificate in a PEM bundle.

    Raises:
        ValueError: If the payload holds no parsable certificate
    """
    lines = []
    for cert in x509.load_pem_x509_certificates(payload):
        cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        common_name = cn_attrs[0].value if cn_attrs else ""
        lines.append(
            f"{common_name}->{_rfc3339(cert.not_valid_before_utc)}->{_rfc3339(cert.not_valid_after_utc)}"
        )
    return lines


def dump_certificates(storage: CertificateStorage, domains: list[str], out: TextIO) -> None:
    """Write the key and certificate files of each domain to out."""
    logger.info("Base directory: %s", storage.namespace_dir)

    for domain in domains:
        for extension in ("key", "crt"):
            path = storage.path_for(domain, extension)
            try:
                payload = path.read_text()
            except OSError as e:
                raise ResourceError(f"cannot read {path}: {e}") from e
            out.write(f"=> {path.name}\n\n")
            out.write(payload)
            out.write("\n")
