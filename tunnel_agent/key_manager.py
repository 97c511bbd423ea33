"""Certificate lifecycle for Tunnel Agent.

The key manager makes sure a key pair exists, obtains a signed certificate
before it reports Running, and renews the certificate in the background
before it expires.
"""

import asyncio
import time
from typing import Callable, Optional

import structlog

from .cert_store import Certificate, CertificateStore, KeyPair, KeyStoreError
from .config import AgentConfig
from .events import CredentialEvent, CredentialEventKind, LatestValueFeed, Subscription
from .metrics import CERTIFICATE_EXPIRY, CERTIFICATE_ROTATIONS
from .service import BasicService
from .signing import CertificateSigner, MalformedResponseError, SigningError, SigningIdentity

logger = structlog.get_logger()


class KeyManager(BasicService):
    """Owns the current certificate and rotates it."""

    name = "key-manager"

    def __init__(
        self,
        config: AgentConfig,
        signer: CertificateSigner,
        store: Optional[CertificateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize key manager.

        Args:
            config: Agent configuration
            signer: Signing API client
            store: Certificate store, defaults to one built from config
            clock: Wall clock returning unix seconds
        """
        super().__init__()
        self.config = config
        self.signer = signer
        self.identity = SigningIdentity.from_config(config)
        self.store = store or CertificateStore(config)
        self.clock = clock
        self._key_pair: Optional[KeyPair] = None
        self._certificate: Optional[Certificate] = None
        self._feed = LatestValueFeed()
        self._expiry_reported = False

    @property
    def certificate(self) -> Optional[Certificate]:
        """Current certificate; replaced as a whole, never mutated."""
        return self._certificate

    @property
    def key_pair(self) -> Optional[KeyPair]:
        return self._key_pair

    def subscribe(self) -> Subscription:
        """Subscribe to rotation and expiry events."""
        return self._feed.subscribe()

    def needs_rotation(self) -> bool:
        """True when the certificate is missing or inside the expiry window."""
        cert = self._certificate
        if cert is None:
            return True
        return cert.expires_within(self.clock(), self.config.cert_expiry_window)

    async def starting(self) -> None:
        await asyncio.to_thread(self.config.ensure_directories)

        self._key_pair = await asyncio.to_thread(
            self.store.ensure_key_pair, self.config.force_key_file_overwrite
        )

        existing = await asyncio.to_thread(self.store.load_certificate)
        if self._can_adopt(existing):
            self._set_certificate(existing)
            logger.info(
                "certificate_reused",
                key_id=existing.key_id,
                valid_before=existing.valid_before,
            )
            return

        cert = await self._issue()
        logger.info(
            "certificate_issued",
            key_id=cert.key_id,
            serial=cert.serial,
            valid_before=cert.valid_before,
        )

    def _can_adopt(self, cert: Optional[Certificate]) -> bool:
        if cert is None:
            return False

        if not cert.signs(self._key_pair):
            logger.info("certificate_key_mismatch", key_id=cert.key_id)
            return False

        if not cert.is_usable(self.clock(), self.config.cert_expiry_window):
            logger.info("certificate_expiring_on_disk", key_id=cert.key_id)
            return False

        if not self.config.skip_ssh_validation and not self.store.has_known_hosts():
            logger.info("known_hosts_missing")
            return False

        return True

    async def _issue(self) -> Certificate:
        """Sign the current public key and store the result.

        Raises:
            SigningError: Signing API failure
            KeyStoreError: Certificate could not be saved
        """
        signed = await self.signer.request_certificate(
            self._key_pair.public_key, self.identity
        )
        cert = signed.certificate

        if not cert.signs(self._key_pair):
            raise MalformedResponseError("Signed certificate does not match public key")

        if signed.known_hosts:
            await asyncio.to_thread(self.store.persist_known_hosts, signed.known_hosts)
        await asyncio.to_thread(self.store.persist_certificate, cert)

        self._set_certificate(cert)
        return cert

    def _set_certificate(self, cert: Certificate) -> None:
        self._certificate = cert
        self._expiry_reported = False
        CERTIFICATE_EXPIRY.set(cert.valid_before)

    async def running(self) -> None:
        logger.info(
            "certificate_rotation_loop_started",
            check_period_seconds=self.config.cert_check_expiry_period,
            expiry_window_seconds=self.config.cert_expiry_window,
        )
        while not await self.wait_stopped(self.config.cert_check_expiry_period):
            try:
                await self.check_certificate()
            except Exception as e:
                logger.error(
                    "certificate_check_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._report_hard_expiry()

    async def check_certificate(self) -> bool:
        """Run one rotation tick.

        Failures are logged and retried on the next tick.

        Returns:
            True if a new certificate was issued
        """
        if not self.needs_rotation():
            return False

        old = self._certificate
        logger.info(
            "certificate_rotation_due",
            key_id=old.key_id if old else None,
            remaining_seconds=old.remaining_seconds(self.clock()) if old else 0,
        )

        try:
            cert = await self._issue()
        except (SigningError, KeyStoreError) as e:
            logger.error("certificate_rotation_failed", error=str(e), error_type=type(e).__name__)
            self._report_hard_expiry()
            return False

        CERTIFICATE_ROTATIONS.inc()
        event = self._feed.publish(CredentialEvent(CredentialEventKind.ROTATED, cert))
        logger.info(
            "certificate_rotated",
            key_id=cert.key_id,
            serial=cert.serial,
            valid_before=cert.valid_before,
            sequence=event.sequence,
        )
        return True

    def _report_hard_expiry(self) -> None:
        cert = self._certificate
        if cert is None or self._expiry_reported:
            return
        if not cert.is_expired(self.clock()):
            return

        self._expiry_reported = True
        self._feed.publish(CredentialEvent(CredentialEventKind.EXPIRED, cert))
        logger.error("certificate_expired", key_id=cert.key_id, valid_before=cert.valid_before)

    async def stopping(self, failure: Optional[BaseException]) -> None:
        # Key and certificate stay on disk for the next start
        logger.info("key_manager_stopped", failed=failure is not None)
