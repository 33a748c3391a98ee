"""
Presence Directory

Maps a recipient id to its live push channel (a WebSocket). The in-memory
implementation only knows about connections to this process; running more
than one web worker needs a shared implementation (e.g. Redis pub/sub)
behind the same interface.
"""

import logging
from threading import Lock
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class LiveChannel(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


class PresenceDirectory(Protocol):
    def get(self, recipient_id: str) -> Optional[LiveChannel]:
        ...

    def register(self, recipient_id: str, channel: LiveChannel) -> None:
        ...

    def unregister(self, recipient_id: str, channel: Optional[LiveChannel] = None) -> None:
        ...


class InMemoryPresenceDirectory:
    """One live channel per recipient; the most recent connection wins."""

    def __init__(self):
        self._channels: Dict[str, LiveChannel] = {}
        self._lock = Lock()

    def get(self, recipient_id: str) -> Optional[LiveChannel]:
        with self._lock:
            return self._channels.get(recipient_id)

    def register(self, recipient_id: str, channel: LiveChannel) -> None:
        with self._lock:
            self._channels[recipient_id] = channel
        logger.debug(f"Recipient {recipient_id} connected")

    def unregister(self, recipient_id: str, channel: Optional[LiveChannel] = None) -> None:
        with self._lock:
            current = self._channels.get(recipient_id)
            # A newer connection may have replaced this one already
            if current is not None and (channel is None or current is channel):
                del self._channels[recipient_id]
        logger.debug(f"Recipient {recipient_id} disconnected")

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)


presence_directory = InMemoryPresenceDirectory()


def get_presence_directory() -> InMemoryPresenceDirectory:
    return presence_directory
