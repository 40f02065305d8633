"""
ACME HTTP-01 challenge serving.

Pending challenges are kept in a registry keyed by domain, shared between
the issuance code that registers them and the HTTP server that answers
validation requests on the plain HTTP port.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from typing import Optional

from aiohttp import web

from .errors import ResourceError


logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"

# Served for anything that is not a pending challenge
PLACEHOLDER_TEXT = "Lookit my cool website over HTTPS!"


@dataclass(frozen=True)
class ChallengeToken:
    """A pending HTTP-01 challenge for one domain."""

    domain: str
    token: str
    key_authorization: str
    # ACME challenge URL, posted to once the token is being served
    url: str = ""

    @property
    def path(self) -> str:
        return f"{CHALLENGE_PATH_PREFIX}{self.token}"


class ChallengeRegistry:
    """Thread-safe map of domain -> pending challenge."""

    def __init__(self):
        self._lock = threading.Lock()
        self._challenges: dict[str, ChallengeToken] = {}

    def register(self, challenge: ChallengeToken) -> None:
        """Register a challenge, replacing any previous one for the domain."""
        challenge = replace(challenge, domain=challenge.domain.lower())
        with self._lock:
            self._challenges[challenge.domain] = challenge
        logger.info(
            "[ACME-CHALLENGE] Registered HTTP-01 challenge for %s: %s",
            challenge.domain, challenge.token,
        )

    def remove(self, domain: str) -> Optional[ChallengeToken]:
        """Remove the challenge for a domain, if any."""
        with self._lock:
            challenge = self._challenges.pop(domain.lower(), None)
        if challenge:
            logger.info("[ACME-CHALLENGE] Cleared HTTP-01 challenge for %s", domain)
        return challenge

    def lookup(self, domain: str, token: str) -> Optional[str]:
        """
        Get the key authorization to serve.

        Returns:
            The key authorization if the token is pending for this domain,
            otherwise None
        """
        with self._lock:
            challenge = self._challenges.get(domain.lower())
        if challenge is None or challenge.token != token:
            return None
        return challenge.key_authorization

    def pending(self) -> list[ChallengeToken]:
        with self._lock:
            return list(self._challenges.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


def _request_domain(request: web.Request) -> str:
    host = request.host or ""
    # Strip the port, keeping bracketed IPv6 literals intact
    if host.startswith("["):
        return host.split("]")[0] + "]"
    return host.rsplit(":", 1)[0].lower()


class HTTPChallengeServer:
    """
    HTTP server answering ACME HTTP-01 challenges.

    Only challenge paths for registered domains get a real answer; every
    other request gets a fixed placeholder page.
    """

    def __init__(self, registry: ChallengeRegistry, host: str = "0.0.0.0", port: int = 80):
        self.registry = registry
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def bound_port(self) -> Optional[int]:
        """The port actually bound, useful when port 0 was requested."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle)
        return app

    async def start(self) -> None:
        """
        Bind the listening socket.

        Raises:
            ResourceError: If the port cannot be bound
        """
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            logger.error(
                "[ACME-CHALLENGE] Cannot bind challenge server to %s:%s: %s",
                self.host, self.port, e,
            )
            raise ResourceError(
                f"cannot bind challenge server to {self.host}:{self.port}: {e}"
            ) from e

        self._runner = runner
        logger.info("[ACME-CHALLENGE] HTTP challenge server started on %s:%s", self.host, self.bound_port)

    async def stop(self) -> None:
        """Stop serving and release the port."""
        self._closing.set()
        self._ready.clear()
        runner, self._runner = self._runner, None
        if runner:
            await runner.cleanup()
            logger.info("[ACME-CHALLENGE] HTTP challenge server stopped")

    async def serve(self) -> None:
        """Run the server until stop() is called or the task is cancelled."""
        # A server can be served again after stop()
        self._closing.clear()
        self._ready.clear()
        await self.start()
        self._ready.set()
        try:
            await self._closing.wait()
        finally:
            await self.stop()

    async def wait_ready(self, task: "asyncio.Task[None]") -> None:
        """
        Wait until the serve() task has bound its port.

        Raises:
            ResourceError: If the task failed to start
        """
        ready = asyncio.ensure_future(self._ready.wait())
        try:
            await asyncio.wait({ready, task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
        if not self._ready.is_set():
            # serve() finished before binding: surface its exception
            task.result()
            raise ResourceError("challenge server exited before it was ready")

    async def _handle(self, request: web.Request) -> web.Response:
        if request.method == "GET" and request.path.startswith(CHALLENGE_PATH_PREFIX):
            token = request.path[len(CHALLENGE_PATH_PREFIX):]
            domain = _request_domain(request)
            key_authorization = self.registry.lookup(domain, token)
            if key_authorization:
                logger.info("[ACME-CHALLENGE] Serving challenge response for %s", domain)
                return web.Response(text=key_authorization, content_type="text/plain")
            logger.warning("[ACME-CHALLENGE] Challenge not found for %s, token: %s", domain, token)

        return web.Response(text=PLACEHOLDER_TEXT, content_type="text/plain")
