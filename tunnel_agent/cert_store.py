"""On-disk key and certificate material for Tunnel Agent.

Owns the ed25519 key pair, the signed SSH certificate and the gateway
known_hosts file. Every write goes to a temporary file in the same directory
and is renamed into place, so readers see either the old or the new file.
"""

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import structlog
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .config import AgentConfig

logger = structlog.get_logger()


class KeyStoreError(Exception):
    """Raised when key or certificate material cannot be read or written."""
    pass


class InvalidKeyFormat(KeyStoreError):
    """Raised when the private key on disk cannot be parsed."""
    pass


class InvalidCertificateFormat(KeyStoreError):
    """Raised when certificate text is not an OpenSSH certificate."""
    pass


@dataclass(frozen=True)
class KeyPair:
    """Private key as stored on disk and its OpenSSH public key."""

    private_key: bytes
    public_key: str
    path: Path


@dataclass(frozen=True)
class Certificate:
    """Parsed OpenSSH certificate.

    Instances are never mutated; rotation replaces the whole value.
    """

    raw: str
    key_id: str
    serial: int
    principals: Tuple[str, ...]
    valid_after: int  # Unix timestamp
    valid_before: int  # Unix timestamp
    public_key: str  # OpenSSH public key the certificate signs
    cert_type: str  # "user" or "host"

    def remaining_seconds(self, now: float) -> float:
        """Seconds until hard expiry, never negative."""
        return max(0.0, self.valid_before - now)

    def is_expired(self, now: float) -> bool:
        return now >= self.valid_before

    def expires_within(self, now: float, window: float) -> bool:
        """True once the certificate is inside the renewal window."""
        return self.valid_before - now <= window

    def is_usable(self, now: float, window: float) -> bool:
        """True while the certificate is valid beyond the renewal window."""
        return self.valid_after <= now < self.valid_before - window

    def signs(self, key_pair: KeyPair) -> bool:
        """Check the certificate was issued for this key pair."""
        return _key_blob(self.public_key) == _key_blob(key_pair.public_key)


def _key_blob(public_key: str) -> Tuple[str, ...]:
    # Drop the comment field
    return tuple(public_key.split()[:2])


def parse_certificate(text: str) -> Certificate:
    """Parse an OpenSSH certificate line.

    Args:
        text: Certificate in authorized_keys format

    Returns:
        Certificate

    Raises:
        InvalidCertificateFormat: If the text is not an SSH certificate
    """
    if not isinstance(text, str):
        raise InvalidCertificateFormat(
            f"Certificate must be text, got {type(text).__name__}"
        )

    data = text.strip().encode()
    try:
        cert = serialization.load_ssh_public_identity(data)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidCertificateFormat(f"Failed to parse certificate: {e}")

    if not isinstance(cert, serialization.SSHCertificate):
        raise InvalidCertificateFormat("Public key is not a certificate")

    public_key = cert.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode()

    if cert.type == serialization.SSHCertificateType.HOST:
        cert_type = "host"
    else:
        cert_type = "user"

    return Certificate(
        raw=text.strip(),
        key_id=cert.key_id.decode(errors="replace"),
        serial=cert.serial,
        principals=tuple(p.decode(errors="replace") for p in cert.valid_principals),
        valid_after=cert.valid_after,
        valid_before=cert.valid_before,
        public_key=public_key,
        cert_type=cert_type,
    )


def atomic_write(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Write data to path via a temporary file and rename.

    Raises:
        OSError: If the write or rename fails; the target is left untouched
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class CertificateStore:
    """Reads and writes the agent's key pair, certificate and known_hosts."""

    def __init__(self, config: AgentConfig):
        """Initialize certificate store.

        Args:
            config: Agent configuration (file locations)
        """
        self.key_path = config.key_path
        self.public_key_path = config.public_key_path
        self.cert_path = config.cert_path
        self.known_hosts_path = config.known_hosts_path

    def ensure_key_pair(self, force_overwrite: bool = False) -> KeyPair:
        """Load the key pair, generating it when missing or forced.

        Args:
            force_overwrite: Replace any existing key with a new one

        Returns:
            KeyPair

        Raises:
            InvalidKeyFormat: If an existing key cannot be parsed
            KeyStoreError: If a new key cannot be written
        """
        if self.key_path.exists() and not force_overwrite:
            return self._load_key_pair()

        logger.info(
            "generating_key_pair",
            path=str(self.key_path),
            forced=force_overwrite,
        )
        return self._generate_key_pair()

    def _load_key_pair(self) -> KeyPair:
        try:
            private_bytes = self.key_path.read_bytes()
        except OSError as e:
            raise KeyStoreError(f"Failed to read key {self.key_path}: {e}")

        try:
            private_key = serialization.load_ssh_private_key(private_bytes, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyFormat(f"Invalid private key {self.key_path}: {e}")

        public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode()

        # The .pub file is written second, so it may be missing after a crash
        if not self._public_key_matches(public_key):
            try:
                atomic_write(self.public_key_path, (public_key + "\n").encode(), 0o644)
            except OSError as e:
                raise KeyStoreError(f"Failed to write public key: {e}")

        logger.debug("key_pair_loaded", path=str(self.key_path))
        return KeyPair(private_key=private_bytes, public_key=public_key, path=self.key_path)

    def _public_key_matches(self, public_key: str) -> bool:
        try:
            existing = self.public_key_path.read_text()
        except OSError:
            return False
        return _key_blob(existing) == _key_blob(public_key)

    def _generate_key_pair(self) -> KeyPair:
        private_key = ed25519.Ed25519PrivateKey.generate()

        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode()

        try:
            atomic_write(self.key_path, private_bytes, 0o600)
            atomic_write(self.public_key_path, (public_key + "\n").encode(), 0o644)
        except OSError as e:
            raise KeyStoreError(f"Failed to write key pair {self.key_path}: {e}")

        return KeyPair(private_key=private_bytes, public_key=public_key, path=self.key_path)

    def persist_certificate(self, cert: Certificate) -> None:
        """Write the certificate beside the key.

        Raises:
            KeyStoreError: If the write fails; the previous file is kept
        """
        try:
            atomic_write(self.cert_path, (cert.raw + "\n").encode(), 0o644)
        except OSError as e:
            logger.error("certificate_write_failed", path=str(self.cert_path), error=str(e))
            raise KeyStoreError(f"Failed to write certificate {self.cert_path}: {e}")

        logger.debug("certificate_saved", path=str(self.cert_path), key_id=cert.key_id)

    def load_certificate(self) -> Optional[Certificate]:
        """Load the certificate saved by a previous run.

        Returns:
            Certificate, or None when missing or unreadable
        """
        try:
            raw = self.cert_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("certificate_read_failed", path=str(self.cert_path), error=str(e))
            return None

        try:
            return parse_certificate(raw.decode())
        except (UnicodeDecodeError, InvalidCertificateFormat) as e:
            logger.warning("certificate_unparsable", path=str(self.cert_path), error=str(e))
            return None

    def persist_known_hosts(self, known_hosts: str) -> None:
        """Write the gateway known_hosts entries.

        Raises:
            KeyStoreError: If the write fails
        """
        data = known_hosts if known_hosts.endswith("\n") else known_hosts + "\n"
        try:
            atomic_write(self.known_hosts_path, data.encode(), 0o644)
        except OSError as e:
            raise KeyStoreError(f"Failed to write known_hosts {self.known_hosts_path}: {e}")

    def has_known_hosts(self) -> bool:
        try:
            return self.known_hosts_path.stat().st_size > 0
        except OSError:
            return False
