"""
ACME client for certificate issuance.

Implements the client side of the ACME exchange used by the issuance
orchestrator: account registration, orders, HTTP-01 authorizations and
finalization. Every network call is awaited, so the challenge server keeps
running while an exchange is in flight.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import httpx
import josepy as jose
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy import JWKRSA

from .challenges import ChallengeToken
from .errors import ProtocolError


logger = logging.getLogger(__name__)

# Renew once less than this fraction of the validity period remains
RENEWAL_WINDOW_RATIO = 1 / 3

CHALLENGE_TYPE = "http-01"


@dataclass
class Order:
    """An ACME order as returned by the server."""

    url: str
    status: str
    identifiers: list[str]
    authorizations: list[str] = field(default_factory=list)
    finalize_url: str = ""
    certificate_url: Optional[str] = None

    @classmethod
    def from_json(cls, url: str, body: dict) -> "Order":
        try:
            return cls(
                url=url,
                status=body["status"],
                identifiers=[i["value"] for i in body.get("identifiers", [])],
                authorizations=list(body.get("authorizations", [])),
                finalize_url=body["finalize"],
                certificate_url=body.get("certificate"),
            )
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"malformed order from server: {e}") from e


def _problem_detail(body: dict) -> str:
    detail = body.get("detail") or "unknown error"
    for sub in body.get("subproblems") or []:
        if isinstance(sub, dict):
            detail += f"; {sub.get('detail', '')}"
    return detail


class ACMEClient:
    """
    ACME client for a single CA directory.

    Only HTTP-01 challenges are supported.
    """

    def __init__(
        self,
        directory_url: str,
        email: str = "",
        agreed: bool = False,
        account_key_path: Optional[Path] = None,
        poll_interval: float = 2.0,
        poll_attempts: int = 30,
        max_attempts: int = 4,
        backoff_cap: float = 30.0,
        http_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ACME client.

        Args:
            directory_url: The CA's ACME directory
            email: Contact email for the ACME account
            agreed: Whether the CA's terms of service were agreed to
            account_key_path: Path to store/load the account key
            poll_interval: Seconds between status polls
            poll_attempts: Polls before an authorization or order times out
            max_attempts: Attempts for a request failing transiently
            backoff_cap: Upper bound in seconds for the retry delay
            http_timeout: Timeout for a single HTTP request
            transport: Optional httpx transport, e.g. for a test double
        """
        self.directory_url = directory_url
        self.email = email
        self.agreed = agreed
        self.account_key_path = account_key_path
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.max_attempts = max_attempts
        self.backoff_cap = backoff_cap
        self.http_timeout = http_timeout
        self._transport = transport
        self.renewal_window_ratio = RENEWAL_WINDOW_RATIO

        # Populated by initialize()
        self.directory: dict = {}
        self.account_key: Optional[JWKRSA] = None
        self.account_url: Optional[str] = None
        self.nonce: Optional[str] = None

        self._client: Optional[httpx.AsyncClient] = None
        self._init_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Renewal policy
    # ------------------------------------------------------------------

    def needs_renewal(self, not_before: datetime, not_after: datetime, now: datetime) -> bool:
        """Whether a certificate valid over [not_before, not_after] should be renewed."""
        if now >= not_after:
            return True
        lifetime = not_after - not_before
        return (not_after - now) < lifetime * self.renewal_window_ratio

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.http_timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def initialize(self) -> None:
        """
        Fetch the directory, load or create the account key and register.

        Safe to call from concurrent tasks; only the first call does work.
        """
        async with self._init_lock:
            if self.account_url:
                return
            if not self.agreed:
                raise ProtocolError("the CA's terms of service must be agreed to (agreed: true)")

            resp = await self._send("GET", self.directory_url)
            self.directory = resp.json()
            logger.info("[ACME-CLIENT] Fetched ACME directory from %s", self.directory_url)

            self.account_key = await asyncio.to_thread(self._load_or_create_account_key)
            await self._register_account()

    def _load_or_create_account_key(self) -> JWKRSA:
        """Load existing account key or create a new one."""
        if self.account_key_path and self.account_key_path.exists():
            try:
                key_data = self.account_key_path.read_bytes()
                private_key = serialization.load_pem_private_key(key_data, password=None)
                logger.info("[ACME-CLIENT] Loaded existing ACME account key")
                return JWKRSA(key=private_key)
            except (OSError, ValueError, TypeError) as e:
                logger.warning("[ACME-CLIENT] Failed to load account key, creating new: %s", e)

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=4096)

        if self.account_key_path:
            try:
                self.account_key_path.parent.mkdir(parents=True, exist_ok=True)
                key_pem = private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
                self.account_key_path.write_bytes(key_pem)
                os.chmod(self.account_key_path, 0o600)
                logger.info("[ACME-CLIENT] Created and saved new ACME account key")
            except OSError as e:
                logger.warning("[ACME-CLIENT] Failed to save account key: %s", e)

        return JWKRSA(key=private_key)

    async def _register_account(self) -> None:
        """Register or fetch existing ACME account."""
        payload: dict = {"termsOfServiceAgreed": True}
        if self.email:
            payload["contact"] = [f"mailto:{self.email}"]

        _, headers = await self._acme_request(
            self.directory["newAccount"],
            payload,
            use_jwk=True,
        )
        self.account_url = headers.get("location")
        if not self.account_url:
            raise ProtocolError("account registration returned no account URL")
        logger.info("[ACME-CLIENT] ACME account registered/retrieved: %s", self.account_url)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt`: 1s, 2s, 4s... capped."""
        return min(2.0 ** (attempt - 1), self.backoff_cap)

    async def _send(self, method: str, url: str, retry: bool = True, **kwargs) -> httpx.Response:
        """
        Send a request, retrying transport errors and 5xx responses.

        Raises:
            ProtocolError: On a 4xx response, or once retries are exhausted
        """
        attempts = self.max_attempts if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._http().request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt == attempts:
                    raise ProtocolError(f"{method} {url} failed: {e}") from e
                logger.warning(
                    "[ACME-CLIENT] %s %s failed (attempt %s/%s): %s",
                    method, url, attempt, attempts, e,
                )
            else:
                if resp.status_code < 500 or attempt == attempts:
                    return self._check(resp)
                logger.warning(
                    "[ACME-CLIENT] %s %s returned %s (attempt %s/%s)",
                    method, url, resp.status_code, attempt, attempts,
                )
            await asyncio.sleep(self._backoff(attempt))
        raise ProtocolError(f"{method} {url} failed after {attempts} attempts")

    def _check(self, resp: httpx.Response) -> httpx.Response:
        if "Replay-Nonce" in resp.headers:
            self.nonce = resp.headers["Replay-Nonce"]
        if resp.status_code < 400:
            return resp

        try:
            problem = resp.json() if resp.content else {}
        except ValueError:
            problem = {"detail": resp.text}
        if not isinstance(problem, dict):
            problem = {"detail": str(problem)}
        problem_type = problem.get("type")
        if resp.status_code == 429:
            message = f"rate limited by CA: {_problem_detail(problem)}"
        else:
            message = f"ACME request failed: {resp.status_code} - {_problem_detail(problem)}"
        raise ProtocolError(message, status_code=resp.status_code, problem_type=problem_type)

    async def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        resp = await self._send("HEAD", self.directory["newNonce"])
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise ProtocolError("server did not return a nonce")
        return nonce

    def _sign_request(
        self,
        url: str,
        payload: Optional[dict],
        use_jwk: bool = False,
    ) -> dict:
        """
        Sign a request with the account key.

        Args:
            url: The URL being requested
            payload: The payload to sign (or None for POST-as-GET)
            use_jwk: Include full JWK instead of kid (for registration)
        """
        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = jose.json_util.encode_b64jose(
                json.dumps(payload).encode("utf-8")
            )

        protected = {
            "alg": "RS256",
            "nonce": self.nonce,
            "url": url,
        }
        if use_jwk:
            protected["jwk"] = self.account_key.public_key().to_partial_json()
        else:
            protected["kid"] = self.account_url

        protected_b64 = jose.json_util.encode_b64jose(
            json.dumps(protected).encode("utf-8")
        )

        signature_input = f"{protected_b64}.{payload_b64}".encode("utf-8")
        signature = self.account_key.key.sign(
            signature_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": jose.json_util.encode_b64jose(signature),
        }

    async def _acme_request(
        self,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
        accept: Optional[str] = None,
    ) -> tuple[httpx.Response, httpx.Headers]:
        """
        Make a signed ACME request.

        Each attempt is signed with a fresh nonce. A badNonce rejection is
        retried once straight away, transient failures with backoff.

        Returns:
            Tuple of (response, response_headers)
        """
        headers = {"Content-Type": "application/jose+json"}
        if accept:
            headers["Accept"] = accept

        attempt = 0
        nonce_retried = False
        while True:
            attempt += 1
            if self.nonce is None:
                self.nonce = await self._get_nonce()
            signed = self._sign_request(url, payload, use_jwk)
            # Each nonce is single use
            self.nonce = None

            try:
                resp = await self._send("POST", url, retry=False, json=signed, headers=headers)
                return resp, resp.headers
            except ProtocolError as e:
                if (e.problem_type or "").endswith(":badNonce") and not nonce_retried:
                    logger.debug("[ACME-CLIENT] Bad nonce, retrying %s", url)
                    nonce_retried = True
                    continue
                transient = e.status_code is None or e.status_code >= 500
                if not transient or attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "[ACME-CLIENT] POST %s failed (attempt %s/%s): %s",
                    url, attempt, self.max_attempts, e,
                )
            await asyncio.sleep(self._backoff(attempt))

    async def _post_as_get(self, url: str) -> dict:
        resp, _ = await self._acme_request(url, None)
        try:
            return resp.json()
        except ValueError as e:
            raise ProtocolError(f"invalid JSON from {url}") from e

    def key_authorization(self, token: str) -> str:
        """The key authorization for a challenge token."""
        thumbprint = self.account_key.thumbprint(hash_function=hashes.SHA256)
        return f"{token}.{jose.json_util.encode_b64jose(thumbprint)}"

    # ------------------------------------------------------------------
    # ACME operations
    # ------------------------------------------------------------------

    async def new_order(self, domains: list[str]) -> Order:
        """Create a new order for the domains."""
        await self.initialize()

        logger.info("[ACME-CLIENT] Creating certificate order for %s", domains)
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp, headers = await self._acme_request(self.directory["newOrder"], payload)
        order_url = headers.get("location")
        if not order_url:
            raise ProtocolError("new order response has no order URL")
        order = Order.from_json(order_url, resp.json())
        if order.status == "invalid":
            raise ProtocolError(f"order for {domains} was rejected")
        return order

    async def get_challenge(self, authorization_url: str) -> Optional[ChallengeToken]:
        """
        Prepare the HTTP-01 challenge of an authorization.

        Returns:
            The challenge to serve, or None if the authorization is already valid
        """
        auth = await self._post_as_get(authorization_url)
        status = auth.get("status")
        if status == "valid":
            return None
        if status != "pending":
            raise ProtocolError(f"authorization {authorization_url} is {status}")

        domain = auth.get("identifier", {}).get("value", "")
        for ch in auth.get("challenges", []):
            if ch.get("type") == CHALLENGE_TYPE:
                challenge = ChallengeToken(
                    domain=domain,
                    token=ch["token"],
                    key_authorization=self.key_authorization(ch["token"]),
                    url=ch["url"],
                )
                logger.info(
                    "[ACME-CLIENT] Challenge prepared: %s for %s, token=%s",
                    CHALLENGE_TYPE, domain, challenge.token,
                )
                return challenge

        raise ProtocolError(f"challenge type {CHALLENGE_TYPE} not offered for {domain}")

    async def submit_challenge_response(self, challenge: ChallengeToken) -> None:
        """Tell the server the challenge is ready to be validated."""
        logger.info("[ACME-CLIENT] Responding to %s challenge for %s", CHALLENGE_TYPE, challenge.domain)
        await self._acme_request(challenge.url, {})

    async def poll_authorization(self, authorization_url: str) -> str:
        """
        Poll an authorization until it is valid.

        Raises:
            ProtocolError: If the authorization becomes invalid or times out
        """
        for _ in range(self.poll_attempts):
            auth = await self._post_as_get(authorization_url)
            status = auth.get("status")

            if status == "valid":
                logger.info("[ACME-CLIENT] Authorization valid: %s", authorization_url)
                return status
            if status in ("invalid", "deactivated", "expired", "revoked"):
                for ch in auth.get("challenges", []):
                    if ch.get("type") == CHALLENGE_TYPE and ch.get("error"):
                        raise ProtocolError(
                            f"challenge failed: {_problem_detail(ch['error'])}",
                            problem_type=ch["error"].get("type"),
                        )
                raise ProtocolError(f"authorization {status}")

            await asyncio.sleep(self.poll_interval)

        raise ProtocolError("authorization timeout")

    async def finalize(self, order: Order, csr_der: bytes) -> str:
        """
        Finalize an order and download the certificate chain.

        Returns:
            PEM certificate chain, leaf first
        """
        logger.info("[ACME-CLIENT] Finalizing certificate order %s", order.url)
        payload = {"csr": jose.json_util.encode_b64jose(csr_der)}
        resp, _ = await self._acme_request(order.finalize_url, payload)
        current = Order.from_json(order.url, resp.json())

        for _ in range(self.poll_attempts):
            if current.status == "valid" and current.certificate_url:
                break
            if current.status == "invalid":
                raise ProtocolError("order invalid")
            await asyncio.sleep(self.poll_interval)
            current = Order.from_json(order.url, await self._post_as_get(order.url))
        else:
            raise ProtocolError("order finalization timeout")

        resp, _ = await self._acme_request(
            current.certificate_url,
            None,
            accept="application/pem-certificate-chain",
        )
        chain_pem = resp.text
        if "-----BEGIN CERTIFICATE-----" not in chain_pem:
            raise ProtocolError("certificate download did not return a PEM chain")
        return chain_pem
