"""
Per-domain certificate issuance and renewal.

For every configured domain the orchestrator decides whether the stored
certificate can be kept, and otherwise drives an ACME exchange and stores
the result. Domains are handled concurrently and independently: a failure
is recorded on the domain's record and never stops the other domains.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from .challenges import ChallengeRegistry, ChallengeToken
from .errors import IssuanceFailed, ProtocolError, ResourceError
from .keys import KeyType, build_csr, generate_private_key
from .settings import ManagerSettings
from .storage import CertificateStorage, StoredCertificate, parse_certificate


logger = logging.getLogger(__name__)


class DomainState(str, Enum):
    UNSTARTED = "unstarted"
    NEEDS_ISSUANCE = "needs_issuance"
    HAS_VALID_CERTIFICATE = "has_valid_certificate"
    RENEWING = "renewing"
    ISSUED = "issued"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {DomainState.ISSUED, DomainState.FAILED, DomainState.HAS_VALID_CERTIFICATE}
)


@dataclass
class DomainRecord:
    """In-memory state of one managed domain."""

    domain: str
    key_type: KeyType
    storage_path: Path
    state: DomainState = DomainState.UNSTARTED
    error: Optional[str] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    history: list[DomainState] = field(default_factory=list)

    def __post_init__(self):
        self.history.append(self.state)

    def transition(self, state: DomainState) -> None:
        logger.debug("[ACME-ISSUANCE] %s: %s -> %s", self.domain, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class EventObserver(Protocol):
    """Receives lifecycle events emitted during issuance."""

    def on_event(self, name: str, data: dict[str, Any]) -> None:
        ...


class LoggingObserver:
    """Writes every event to the log."""

    def on_event(self, name: str, data: dict[str, Any]) -> None:
        logger.info("Event: %s with data: %s", name, data)


class Issuer(Protocol):
    """The ACME operations the orchestrator needs (see ACMEClient)."""

    def needs_renewal(self, not_before: datetime, not_after: datetime, now: datetime) -> bool:
        ...

    async def new_order(self, domains: list[str]) -> Any:
        ...

    async def get_challenge(self, authorization_url: str) -> Optional[ChallengeToken]:
        ...

    async def submit_challenge_response(self, challenge: ChallengeToken) -> None:
        ...

    async def poll_authorization(self, authorization_url: str) -> str:
        ...

    async def finalize(self, order: Any, csr_der: bytes) -> str:
        ...


@dataclass
class IssuanceReport:
    """Outcome of a manage() run, one record per domain."""

    records: list[DomainRecord]

    @property
    def succeeded(self) -> list[DomainRecord]:
        return [r for r in self.records if r.state != DomainState.FAILED]

    @property
    def failed(self) -> list[DomainRecord]:
        return [r for r in self.records if r.state == DomainState.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed

    def failures(self) -> dict[str, str]:
        return {r.domain: r.error or "unknown error" for r in self.failed}

    def raise_for_failures(self) -> None:
        if self.failed:
            raise IssuanceFailed(self.failures())


class IssuanceOrchestrator:
    """Drives every configured domain to a terminal state."""

    def __init__(
        self,
        settings: ManagerSettings,
        storage: CertificateStorage,
        issuer: Issuer,
        registry: ChallengeRegistry,
        observer: Optional[EventObserver] = None,
    ):
        self.settings = settings
        self.storage = storage
        self.issuer = issuer
        self.registry = registry
        self.observer = observer or LoggingObserver()
        self.records: dict[str, DomainRecord] = {}

    def record_for(self, domain: str) -> DomainRecord:
        record = self.records.get(domain)
        if record is None:
            record = DomainRecord(
                domain=domain,
                key_type=self.settings.key_type,
                storage_path=self.storage.domain_dir(domain),
            )
            self.records[domain] = record
        return record

    def _emit(self, name: str, data: dict[str, Any]) -> None:
        try:
            self.observer.on_event(name, data)
        except Exception:
            logger.exception("[ACME-ISSUANCE] Event observer failed on %s", name)

    async def manage(self, domains: list[str]) -> IssuanceReport:
        """
        Obtain or renew certificates for all domains.

        Returns once every domain is terminal. Per-domain failures are on the
        returned report; cancellation propagates to all in-flight exchanges.
        """
        records = [self.record_for(domain) for domain in domains]
        for record in records:
            record.state = DomainState.UNSTARTED
            record.error = None
            record.history = [DomainState.UNSTARTED]

        await asyncio.gather(*(self._manage_domain(record) for record in records))

        report = IssuanceReport(records)
        logger.info(
            "[ACME-ISSUANCE] Finished %s domain(s): %s ok, %s failed",
            len(records), len(report.succeeded), len(report.failed),
        )
        return report

    async def _manage_domain(self, record: DomainRecord) -> None:
        domain = record.domain
        try:
            stored = self.storage.load(domain)
        except (ResourceError, ValueError) as e:
            self._fail(record, e)
            return

        now = datetime.now(timezone.utc)
        if stored is not None and not self.needs_issuance(stored, now):
            record.not_before, record.not_after = stored.issued_at, stored.expires_at
            record.transition(DomainState.HAS_VALID_CERTIFICATE)
            self._emit("cached_managed_cert", {"sans": [domain], "expires": stored.expires_at.isoformat()})
            return

        record.transition(DomainState.NEEDS_ISSUANCE)
        self._emit("cert_obtaining", {"identifier": domain, "renewal": stored is not None})
        try:
            await asyncio.wait_for(
                self._issue(record, stored, now),
                timeout=self.settings.issuance_timeout,
            )
        except asyncio.TimeoutError:
            self._fail(
                record,
                ProtocolError(f"issuance timed out after {self.settings.issuance_timeout}s"),
            )
        except Exception as e:
            # CancelledError is not an Exception and still propagates
            self._fail(record, e)

    def needs_issuance(self, stored: StoredCertificate, now: datetime) -> bool:
        """A stored certificate is kept only while outside the renewal window."""
        return self.issuer.needs_renewal(stored.issued_at, stored.expires_at, now)

    async def _select_key(self, stored: Optional[StoredCertificate], now: datetime) -> bytes:
        if self.settings.reuse_private_keys and stored is not None and not stored.is_expired(now):
            logger.info("[ACME-ISSUANCE] Reusing existing private key for %s", stored.domain)
            return stored.key_pem
        # Off the event loop: large RSA keys take seconds to generate
        return await asyncio.to_thread(generate_private_key, self.settings.key_type)

    async def _issue(
        self,
        record: DomainRecord,
        stored: Optional[StoredCertificate],
        now: datetime,
    ) -> None:
        domain = record.domain
        key_pem = await self._select_key(stored, now)
        record.transition(DomainState.RENEWING)

        try:
            order = await self.issuer.new_order([domain])
            for authorization_url in order.authorizations:
                challenge = await self.issuer.get_challenge(authorization_url)
                if challenge is None:
                    continue
                self.registry.register(challenge)
                await self.issuer.submit_challenge_response(challenge)
                await self.issuer.poll_authorization(authorization_url)

            csr_der = await asyncio.to_thread(build_csr, key_pem, [domain])
            chain_pem = await self.issuer.finalize(order, csr_der)
            info = parse_certificate(chain_pem.encode("utf-8"))
            self.storage.save(
                StoredCertificate(
                    domain=domain,
                    key_pem=key_pem,
                    chain_pem=chain_pem.encode("utf-8"),
                    issued_at=info.not_before,
                    expires_at=info.not_after,
                )
            )
        finally:
            self.registry.remove(domain)

        record.not_before, record.not_after = info.not_before, info.not_after
        record.transition(DomainState.ISSUED)
        logger.info("[ACME-ISSUANCE] Certificate issued for %s, expires %s", domain, info.not_after)
        self._emit("cert_obtained", {"identifier": domain, "expires": info.not_after.isoformat()})

    def _fail(self, record: DomainRecord, error: Exception) -> None:
        record.error = str(error) or type(error).__name__
        record.transition(DomainState.FAILED)
        logger.error("[ACME-ISSUANCE] Certificate for %s failed: %s", record.domain, record.error)
        self._emit("cert_failed", {"identifier": record.domain, "error": record.error})
