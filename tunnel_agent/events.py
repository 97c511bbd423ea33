"""Credential change notifications between the key manager and the tunnel."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .cert_store import Certificate


class CredentialEventKind(str, Enum):
    ROTATED = "rotated"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CredentialEvent:
    kind: CredentialEventKind
    certificate: Certificate
    sequence: int = 0


class LatestValueFeed:
    """Single-value broadcast channel.

    Publishing never blocks. A subscriber that falls behind skips straight
    to the newest value, so it never sees a stale event after catching up.
    """

    def __init__(self):
        self._version = 0
        self._value: Optional[CredentialEvent] = None
        self._changed = asyncio.Event()

    @property
    def version(self) -> int:
        return self._version

    def publish(self, event: CredentialEvent) -> CredentialEvent:
        self._version += 1
        event = CredentialEvent(event.kind, event.certificate, self._version)
        self._value = event
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        return event

    def subscribe(self) -> "Subscription":
        """Subscribe to values published from now on."""
        return Subscription(self)


class Subscription:
    def __init__(self, feed: LatestValueFeed):
        self._feed = feed
        self._seen = feed.version

    def pending(self) -> bool:
        return self._seen != self._feed.version

    async def get(self) -> CredentialEvent:
        """Wait for a value newer than the last one returned."""
        while not self.pending():
            await self._feed._changed.wait()
        self._seen = self._feed.version
        return self._feed._value
