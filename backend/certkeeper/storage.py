"""
Certificate storage and validation.

Stores one key/certificate pair per domain under a directory namespaced
by the CA host:

    <root>/certificates/<ca-host>-directory/<domain>/<domain>.key
    <root>/certificates/<ca-host>-directory/<domain>/<domain>.crt
    <root>/certificates/<ca-host>-directory/<domain>/<domain>.json

External tooling relies on these paths, so they must not change.
"""
import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import NameOID

from .errors import ResourceError
from .keys import load_private_key


logger = logging.getLogger(__name__)

_STAGING_PREFIX = ".staging-"
_RETIRED_PREFIX = ".retired-"


@dataclass
class CertificateInfo:
    """Information extracted from a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    domains: list[str] = field(default_factory=list)  # Subject CN + SANs

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if certificate is expired."""
        return (now or datetime.now(timezone.utc)) > self.not_after


@dataclass
class StoredCertificate:
    """A private key and certificate chain persisted for one domain."""

    domain: str
    key_pem: bytes
    chain_pem: bytes
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at


def parse_certificate(cert_pem: bytes) -> CertificateInfo:
    """
    Parse the first certificate of a PEM bundle and extract info.

    Raises:
        ValueError: If the data is not a PEM certificate
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    subject_cn = ""
    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        subject_cn = cn_attrs[0].value

    issuer_cn = ""
    cn_attrs = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        issuer_cn = cn_attrs[0].value

    # Extract domains from SANs
    domains = []
    if subject_cn:
        domains.append(subject_cn)
    try:
        san_ext = cert.extensions.get_extension_for_oid(
            x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        )
        for name in san_ext.value:
            if isinstance(name, x509.DNSName) and name.value not in domains:
                domains.append(name.value)
    except x509.ExtensionNotFound as e:
        logger.debug("[ACME-STORAGE] Certificate has no SAN extension: %s", e)

    return CertificateInfo(
        subject=subject_cn,
        issuer=issuer_cn,
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        domains=domains,
    )


def validate_pair(cert_pem: bytes, key_pem: bytes) -> CertificateInfo:
    """
    Validate that certificate and key form a valid pair.

    Raises:
        ValueError: If either cannot be parsed or the key does not match
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    try:
        key = load_private_key(key_pem)
    except (TypeError, ValueError) as e:
        raise ValueError(f"cannot load private key: {e}") from e

    cert_public_key = cert.public_key()

    if isinstance(cert_public_key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)) and isinstance(
        key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)
    ):
        matches = cert_public_key.public_numbers() == key.public_key().public_numbers()
    elif isinstance(cert_public_key, ed25519.Ed25519PublicKey) and isinstance(
        key, ed25519.Ed25519PrivateKey
    ):
        matches = cert_public_key == key.public_key()
    else:
        raise ValueError(
            f"unsupported key type: cert={type(cert_public_key).__name__}, key={type(key).__name__}"
        )

    if not matches:
        raise ValueError("private key does not match certificate")
    return parse_certificate(cert_pem)


def _write_file(path: Path, data: bytes, mode: int) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(path, mode)


class CertificateStorage:
    """Manages per-domain certificate and key storage on disk."""

    def __init__(self, storage_root: Union[str, os.PathLike], ca_directory_url: str):
        self.storage_root = Path(storage_root)
        self.ca_host = urlparse(ca_directory_url).hostname or ""
        if not self.ca_host:
            raise ValueError(f"CA directory URL has no host: {ca_directory_url!r}")
        self.namespace_dir = self.storage_root / "certificates" / f"{self.ca_host}-directory"

    def domain_dir(self, domain: str) -> Path:
        return self.namespace_dir / domain

    def path_for(self, domain: str, extension: str) -> Path:
        """Path of a domain's file, e.g. extension "key" or "crt"."""
        return self.domain_dir(domain) / f"{domain}.{extension}"

    def account_key_path(self, email: str) -> Path:
        """Where the ACME account key for this CA and contact is kept."""
        name = email or "default"
        return (
            self.storage_root / "accounts" / f"{self.ca_host}-directory" / name / f"{name}.key"
        )

    def load(self, domain: str) -> Optional[StoredCertificate]:
        """
        Load the stored certificate for a domain.

        Returns:
            The stored certificate, or None if there is none

        Raises:
            ResourceError: If the files exist but cannot be read
        """
        key_path = self.path_for(domain, "key")
        crt_path = self.path_for(domain, "crt")
        meta_path = self.path_for(domain, "json")

        try:
            key_pem = key_path.read_bytes()
            chain_pem = crt_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ResourceError(f"cannot read certificate for {domain}: {e}") from e

        issued_at, expires_at = self._read_metadata(meta_path)
        if issued_at is None or expires_at is None:
            try:
                info = parse_certificate(chain_pem)
            except ValueError as e:
                logger.warning("[ACME-STORAGE] Unreadable certificate for %s: %s", domain, e)
                return None
            issued_at, expires_at = info.not_before, info.not_after

        return StoredCertificate(
            domain=domain,
            key_pem=key_pem,
            chain_pem=chain_pem,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _read_metadata(self, meta_path: Path) -> tuple[Optional[datetime], Optional[datetime]]:
        try:
            meta = json.loads(meta_path.read_text())
            return (
                datetime.fromisoformat(meta["issued_at"]),
                datetime.fromisoformat(meta["expires_at"]),
            )
        except FileNotFoundError:
            return None, None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug("[ACME-STORAGE] Ignoring metadata %s: %s", meta_path, e)
            return None, None

    def save(self, stored: StoredCertificate) -> Path:
        """
        Save a key and certificate chain for a domain.

        The files are staged in a hidden directory and swapped into place,
        so the key and chain are replaced together or not at all.

        Returns:
            The domain directory

        Raises:
            ResourceError: If the files cannot be written
        """
        domain = stored.domain
        target = self.domain_dir(domain)
        token = uuid.uuid4().hex
        staging = self.namespace_dir / f"{_STAGING_PREFIX}{domain}-{token}"
        retired = self.namespace_dir / f"{_RETIRED_PREFIX}{domain}-{token}"

        meta = {
            "domain": domain,
            "issued_at": stored.issued_at.isoformat(),
            "expires_at": stored.expires_at.isoformat(),
        }

        try:
            self.namespace_dir.mkdir(parents=True, exist_ok=True)
            staging.mkdir(mode=0o700)
            _write_file(staging / f"{domain}.key", stored.key_pem, 0o600)
            _write_file(staging / f"{domain}.crt", stored.chain_pem, 0o640)
            _write_file(
                staging / f"{domain}.json", json.dumps(meta, indent=2).encode("utf-8"), 0o600
            )

            if target.exists():
                os.rename(target, retired)
            try:
                os.rename(staging, target)
            except OSError:
                # Put the previous certificate back
                if retired.exists():
                    os.rename(retired, target)
                raise
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            logger.error("[ACME-STORAGE] Failed to save certificate for %s: %s", domain, e)
            raise ResourceError(f"cannot save certificate for {domain}: {e}") from e

        shutil.rmtree(retired, ignore_errors=True)
        logger.info("[ACME-STORAGE] Certificate for %s saved to %s", domain, target)
        return target

    def list_domains(self) -> list[str]:
        """Domains with a directory in this CA namespace."""
        if not self.namespace_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.namespace_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def _restore_retired(self, errors: list[str]) -> None:
        """Move back a retired pair whose replacement never arrived."""
        for entry in sorted(self.namespace_dir.glob(f"{_RETIRED_PREFIX}*")):
            domain = entry.name[len(_RETIRED_PREFIX):].rsplit("-", 1)[0]
            target = self.domain_dir(domain)
            if not entry.is_dir() or target.exists():
                continue
            try:
                os.rename(entry, target)
            except OSError as e:
                errors.append(f"{entry.name}: {e}")
                continue
            logger.warning("[ACME-STORAGE] Restored interrupted save for %s", domain)

    def cleanup_expired(self, now: Optional[datetime] = None) -> list[str]:
        """
        Remove certificates of this CA namespace that expired before now.

        Leftover staging directories from interrupted saves are removed; a
        retired pair with no replacement is moved back into place first.

        Returns:
            Domains whose certificates were removed

        Raises:
            ResourceError: If some entries could not be removed
        """
        now = now or datetime.now(timezone.utc)
        if not self.namespace_dir.is_dir():
            return []

        removed: list[str] = []
        errors: list[str] = []
        self._restore_retired(errors)

        for entry in sorted(self.namespace_dir.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name.startswith((_STAGING_PREFIX, _RETIRED_PREFIX)):
                try:
                    shutil.rmtree(entry)
                except OSError as e:
                    errors.append(f"{entry.name}: {e}")
                continue

            domain = entry.name
            try:
                stored = self.load(domain)
            except ResourceError as e:
                errors.append(str(e))
                continue
            if stored is None or stored.expires_at >= now:
                continue

            try:
                shutil.rmtree(entry)
            except OSError as e:
                errors.append(f"{domain}: {e}")
                continue
            logger.info(
                "[ACME-STORAGE] Removed expired certificate for %s (expired %s)",
                domain, stored.expires_at.isoformat(),
            )
            removed.append(domain)

        if errors:
            raise ResourceError("storage cleanup incomplete: " + "; ".join(errors))
        return removed
