"""
Shared fixtures for certkeeper tests.

FakeCA stands in for the ACME client: it hands out orders and HTTP-01
challenges, checks the challenge is actually being served, and signs the
submitted CSR with a throwaway CA key. No network access is needed.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certkeeper.acme_client import Order, RENEWAL_WINDOW_RATIO
from certkeeper.challenges import ChallengeRegistry, ChallengeToken, HTTPChallengeServer
from certkeeper.errors import ProtocolError
from certkeeper.keys import KeyType, generate_private_key
from certkeeper.settings import LETSENCRYPT_STAGING, ManagerSettings
from certkeeper.storage import CertificateStorage, StoredCertificate


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


class CertificateFactory:
    """Issues certificates from a throwaway CA."""

    def __init__(self):
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(timezone.utc)
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(_name("Fake Test CA"))
            .issuer_name(_name("Fake Test CA"))
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.ca_key, hashes.SHA256())
        )

    def sign(self, domain: str, public_key, not_before: datetime, not_after: datetime) -> bytes:
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name(domain))
            .issuer_name(self.ca_cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(self.ca_key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM) + self.ca_cert.public_bytes(
            serialization.Encoding.PEM
        )

    def stored(
        self,
        domain: str,
        not_before: datetime,
        not_after: datetime,
        key_type: KeyType = KeyType.P256,
    ) -> StoredCertificate:
        key_pem = generate_private_key(key_type)
        key = serialization.load_pem_private_key(key_pem, password=None)
        chain_pem = self.sign(domain, key.public_key(), not_before, not_after)
        return StoredCertificate(
            domain=domain,
            key_pem=key_pem,
            chain_pem=chain_pem,
            issued_at=not_before,
            expires_at=not_after,
        )


class FakeCA:
    """In-process replacement for ACMEClient."""

    def __init__(self, factory: CertificateFactory, registry: ChallengeRegistry, validity_days: int = 90):
        self.factory = factory
        self.registry = registry
        self.validity_days = validity_days
        self.challenge_server: Optional[HTTPChallengeServer] = None

        self.orders: list[list[str]] = []
        self.submitted: list[str] = []
        self.csrs: dict[str, x509.CertificateSigningRequest] = {}
        self.reject_orders: dict[str, str] = {}
        self.fail_authorizations: dict[str, str] = {}
        self.hang_authorizations: set[str] = set()
        self.closed = False

    def needs_renewal(self, not_before: datetime, not_after: datetime, now: datetime) -> bool:
        if now >= not_after:
            return True
        return (not_after - now) < (not_after - not_before) * RENEWAL_WINDOW_RATIO

    async def new_order(self, domains: list[str]) -> Order:
        self.orders.append(list(domains))
        domain = domains[0]
        if domain in self.reject_orders:
            raise ProtocolError(self.reject_orders[domain], status_code=403)
        return Order(
            url=f"https://ca.test/order/{domain}",
            status="pending",
            identifiers=list(domains),
            authorizations=[f"https://ca.test/authz/{domain}"],
            finalize_url=f"https://ca.test/finalize/{domain}",
        )

    async def get_challenge(self, authorization_url: str) -> ChallengeToken:
        domain = authorization_url.rsplit("/", 1)[1]
        return ChallengeToken(
            domain=domain,
            token=f"token-{domain}",
            key_authorization=f"token-{domain}.thumbprint",
            url=f"https://ca.test/chall/{domain}",
        )

    async def submit_challenge_response(self, challenge: ChallengeToken) -> None:
        self.submitted.append(challenge.domain)
        if self.challenge_server is not None:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    f"http://127.0.0.1:{self.challenge_server.bound_port}{challenge.path}",
                    headers={"Host": challenge.domain},
                )
            served = resp.text
        else:
            served = self.registry.lookup(challenge.domain, challenge.token)
        if served != challenge.key_authorization:
            raise ProtocolError(f"challenge for {challenge.domain} was not served")

    async def poll_authorization(self, authorization_url: str) -> str:
        domain = authorization_url.rsplit("/", 1)[1]
        if domain in self.hang_authorizations:
            await asyncio.sleep(3600)
        if domain in self.fail_authorizations:
            raise ProtocolError(f"challenge failed: {self.fail_authorizations[domain]}")
        return "valid"

    async def finalize(self, order: Order, csr_der: bytes) -> str:
        csr = x509.load_der_x509_csr(csr_der)
        domain = order.identifiers[0]
        self.csrs[domain] = csr
        now = datetime.now(timezone.utc).replace(microsecond=0)
        chain = self.factory.sign(
            domain,
            csr.public_key(),
            now - timedelta(minutes=1),
            now + timedelta(days=self.validity_days),
        )
        return chain.decode("utf-8")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(scope="session")
def cert_factory():
    """A throwaway CA shared by the whole session."""
    return CertificateFactory()


@pytest.fixture
def settings(tmp_path):
    """Settings for a staging run against a local challenge port."""
    return ManagerSettings(
        storage=tmp_path / "storage",
        key_type="p256",
        email="admin@example.com",
        agreed=True,
        staging=True,
        domains=["example.com"],
        http_host="127.0.0.1",
        http_port=0,
        issuance_timeout=10,
    )


@pytest.fixture
def storage(tmp_path):
    """Certificate storage under the staging CA namespace."""
    return CertificateStorage(tmp_path / "storage", LETSENCRYPT_STAGING)


@pytest.fixture
def registry():
    return ChallengeRegistry()


@pytest.fixture
def fake_ca(cert_factory, registry):
    return FakeCA(cert_factory, registry)
