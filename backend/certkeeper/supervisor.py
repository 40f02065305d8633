"""
Top-level certificate lifecycle run.

Sequences one run: storage cleanup, challenge server startup, issuance for
every configured domain, shutdown. Decides which failures are fatal (the
challenge port) and which are only reported (cleanup, single domains).
"""
import asyncio
import logging
import sys
from typing import Optional, TextIO

from .acme_client import ACMEClient
from .challenges import ChallengeRegistry, HTTPChallengeServer
from .display import dump_certificates
from .errors import ResourceError
from .orchestrator import EventObserver, IssuanceOrchestrator, IssuanceReport, Issuer
from .settings import ManagerSettings
from .storage import CertificateStorage


logger = logging.getLogger(__name__)


class LifecycleSupervisor:
    """Owns the challenge server and the issuance run for one process."""

    def __init__(
        self,
        settings: ManagerSettings,
        storage: Optional[CertificateStorage] = None,
        issuer: Optional[Issuer] = None,
        registry: Optional[ChallengeRegistry] = None,
        server: Optional[HTTPChallengeServer] = None,
        observer: Optional[EventObserver] = None,
    ):
        self.settings = settings
        endpoint = settings.ca_endpoint
        self.storage = storage or CertificateStorage(settings.storage_root, endpoint.directory_url)
        self.registry = registry or ChallengeRegistry()
        self.issuer = issuer or ACMEClient(
            directory_url=endpoint.directory_url,
            email=settings.contact_email,
            agreed=settings.agreed_to_terms,
            account_key_path=self.storage.account_key_path(settings.contact_email),
        )
        self.server = server or HTTPChallengeServer(
            self.registry, host=settings.http_host, port=settings.http_port
        )
        self.orchestrator = IssuanceOrchestrator(
            settings, self.storage, self.issuer, self.registry, observer=observer
        )

    def cleanup_storage(self) -> list[str]:
        """Remove expired certificates. Errors are logged, never raised."""
        try:
            removed = self.storage.cleanup_expired()
        except (ResourceError, OSError) as e:
            logger.warning("[ACME-SUPERVISOR] Storage cleanup failed: %s", e)
            return []
        if removed:
            logger.info("[ACME-SUPERVISOR] Cleaned expired certificates: %s", removed)
        return removed

    async def run(self, display: bool = False, out: Optional[TextIO] = None) -> IssuanceReport:
        """
        Run the full lifecycle for the configured domains.

        Raises:
            ResourceError: If the challenge server cannot bind or dies mid-run
        """
        self.cleanup_storage()

        logger.info("[ACME-SUPERVISOR] Starting server for domains: %s", self.settings.domains)
        server_task = asyncio.create_task(self.server.serve(), name="challenge-server")
        manage_task: Optional[asyncio.Task] = None
        try:
            await self.server.wait_ready(server_task)

            manage_task = asyncio.create_task(
                self.orchestrator.manage(self.settings.domains), name="issuance"
            )
            await asyncio.wait({manage_task, server_task}, return_when=asyncio.FIRST_COMPLETED)

            if not manage_task.done():
                manage_task.cancel()
                error = server_task.exception() if not server_task.cancelled() else None
                raise ResourceError(f"challenge server stopped during issuance: {error}")
            report = manage_task.result()
        finally:
            if manage_task is not None and not manage_task.done():
                manage_task.cancel()
                await asyncio.gather(manage_task, return_exceptions=True)
            await self.server.stop()
            await asyncio.gather(server_task, return_exceptions=True)
            await self._close_issuer()

        if display:
            self.display(report, out or sys.stdout)
        return report

    def display(self, report: IssuanceReport, out: TextIO) -> None:
        """Dump the files of every domain holding a certificate. Errors are logged."""
        domains = [record.domain for record in report.succeeded]
        try:
            dump_certificates(self.storage, domains, out)
        except ResourceError as e:
            logger.error("[ACME-SUPERVISOR] Cannot display certificates: %s", e)

    async def _close_issuer(self) -> None:
        close = getattr(self.issuer, "close", None)
        if close is not None:
            await close()
