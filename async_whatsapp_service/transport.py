"""
Transport capability interface.

A transport owns one live connection to the messaging network for a single
account.  Lifecycle and message notifications are pushed into a per-session
event channel with :meth:`Transport.emit` and consumed, in arrival order, by
the session task through :meth:`Transport.next_event`.  Concrete adapters
implement :meth:`initialize`, :meth:`send_message` and :meth:`destroy`.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict


class EventKind(str, Enum):
    """Named events a transport may emit."""

    QR = "qr"
    READY = "ready"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


@dataclass(frozen=True)
class TransportEvent:
    kind: EventKind
    data: Any = None


@dataclass(frozen=True)
class TransportConfig:
    """Per-account settings handed to the transport factory."""

    account_id: str
    session_dir: str


class Transport(ABC):
    """Abstract connection to the messaging network for one account."""

    def __init__(self, config: TransportConfig):
        self.config = config
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()

    def emit(self, kind: EventKind | str, data: Any = None) -> None:
        """Queue an event for the session task; never blocks the caller."""
        self._events.put_nowait(TransportEvent(EventKind(kind), data))

    async def next_event(self) -> TransportEvent:
        """Wait for the next event emitted by this connection."""
        return await self._events.get()

    @abstractmethod
    async def initialize(self) -> None:
        """Open the connection; events may be emitted while this runs."""
        ...

    @abstractmethod
    async def send_message(self, address: str, body: str) -> Dict[str, Any]:
        """
        Send a text message.

        Returns:
            Mapping with ``id``, ``from``, ``to`` and ``timestamp`` keys.
        """
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Close the connection and release its resources."""
        ...


TransportFactory = Callable[[TransportConfig], Transport]
