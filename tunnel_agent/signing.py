"""Signing API client for Tunnel Agent.

Exchanges the agent's public key for a short-lived SSH certificate and the
gateway's known_hosts entries.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import httpx
import structlog

from . import __version__
from .cert_store import Certificate, InvalidCertificateFormat, parse_certificate
from .config import AgentConfig
from .metrics import SIGNING_REQUESTS

logger = structlog.get_logger()


class SigningError(Exception):
    """Raised when the signing API does not return a certificate."""

    retryable = False


class UnauthorizedError(SigningError):
    """Token or tenant rejected by the signing API."""
    pass


class TransientSigningError(SigningError):
    """Network failure or server-side error; worth retrying."""

    retryable = True


class SigningTimeout(TransientSigningError):
    """Signing request did not finish within the configured timeout."""
    pass


class MalformedResponseError(SigningError):
    """Request or response rejected as malformed; retrying will not help."""
    pass


@dataclass(frozen=True)
class SigningIdentity:
    """Who the agent signs in as."""

    tenant_id: str
    token: str
    extra_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: AgentConfig) -> "SigningIdentity":
        return cls(
            tenant_id=config.tenant_id,
            token=config.token,
            extra_headers=dict(config.extra_headers),
        )


@dataclass(frozen=True)
class SignedCertificate:
    """Signing API response."""

    certificate: Certificate
    known_hosts: str


class CertificateSigner(Protocol):
    """Anything that can turn a public key into a signed certificate."""

    async def request_certificate(
        self, public_key: str, identity: SigningIdentity
    ) -> SignedCertificate:
        ...


class SigningClient:
    """httpx based client for the sign-public-key endpoint."""

    def __init__(self, config: AgentConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize signing client.

        Args:
            config: Agent configuration
            transport: Optional httpx transport override
        """
        self.config = config
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.config.sign_timeout,
                transport=self._transport,
                headers={"User-Agent": f"tunnel-agent/{__version__}"},
            )
        return self._http_client

    async def request_certificate(
        self, public_key: str, identity: SigningIdentity
    ) -> SignedCertificate:
        """Request a certificate for public_key.

        Transient failures are retried with exponential backoff; the whole
        call, retries included, is bounded by sign_timeout.

        Raises:
            UnauthorizedError: Credentials rejected
            MalformedResponseError: Non-retryable request or response problem
            TransientSigningError: Retries exhausted
            SigningTimeout: sign_timeout elapsed
        """
        try:
            result = await asyncio.wait_for(
                self._request_with_retry(public_key, identity),
                timeout=self.config.sign_timeout,
            )
        except asyncio.TimeoutError:
            SIGNING_REQUESTS.labels(outcome="timeout").inc()
            raise SigningTimeout(
                f"Signing request timed out after {self.config.sign_timeout}s"
            )
        except UnauthorizedError:
            SIGNING_REQUESTS.labels(outcome="unauthorized").inc()
            raise
        except MalformedResponseError:
            SIGNING_REQUESTS.labels(outcome="malformed").inc()
            raise
        except TransientSigningError:
            SIGNING_REQUESTS.labels(outcome="transient").inc()
            raise

        SIGNING_REQUESTS.labels(outcome="success").inc()
        return result

    async def _request_with_retry(
        self, public_key: str, identity: SigningIdentity
    ) -> SignedCertificate:
        attempt = 0
        while True:
            try:
                return await self._request_once(public_key, identity)
            except TransientSigningError as e:
                attempt += 1
                if attempt > self.config.sign_retries:
                    raise

                wait_time = min(0.5 * (2 ** (attempt - 1)), 10.0)
                logger.warning(
                    "signing_request_retry",
                    attempt=attempt,
                    max_retries=self.config.sign_retries,
                    wait_seconds=wait_time,
                    error=str(e),
                )
                await asyncio.sleep(wait_time)

    async def _request_once(
        self, public_key: str, identity: SigningIdentity
    ) -> SignedCertificate:
        headers = {"Content-Type": "application/json"}
        headers.update(identity.extra_headers)

        try:
            response = await self.http_client.post(
                self.config.sign_public_key_endpoint,
                json={"publicKey": public_key},
                headers=headers,
                auth=(identity.tenant_id, identity.token),
            )
        except httpx.TimeoutException as e:
            raise TransientSigningError(f"Signing request timed out: {e}")
        except httpx.RequestError as e:
            raise TransientSigningError(f"Network error during signing: {e}")

        if response.status_code in (401, 403):
            raise UnauthorizedError(
                f"Signing API rejected credentials ({response.status_code})"
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSigningError(
                f"Signing API returned {response.status_code}"
            )

        if response.status_code != 200:
            raise MalformedResponseError(
                f"Signing API returned {response.status_code}: {response.text[:200]}"
            )

        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> SignedCertificate:
        try:
            data = response.json()
        except ValueError:
            raise MalformedResponseError("Signing API returned invalid JSON")

        if not isinstance(data, dict) or not data.get("certificate"):
            raise MalformedResponseError("Signing API response has no certificate")

        if not isinstance(data["certificate"], str):
            raise MalformedResponseError("Signing API returned invalid certificate")

        try:
            certificate = parse_certificate(data["certificate"])
        except InvalidCertificateFormat as e:
            raise MalformedResponseError(str(e))

        known_hosts = data.get("known_hosts") or ""
        if not isinstance(known_hosts, str):
            raise MalformedResponseError("Signing API returned invalid known_hosts")

        return SignedCertificate(certificate=certificate, known_hosts=known_hosts)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
