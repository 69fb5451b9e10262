"""In-memory registry of live account sessions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .errors import AlreadyExists
from .logger import get_logger
from .transport import Transport


class SessionStatus(str, Enum):
    """Lifecycle states of an account connection."""

    INITIALIZING = "initializing"
    QR_READY = "qr_ready"
    READY = "ready"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"


@dataclass
class SessionHandle:
    """Live state of one account: its transport plus cached status and QR code."""

    account_id: str
    transport: Transport
    status: SessionStatus = SessionStatus.INITIALIZING
    qr_code: Optional[str] = None
    phone_number: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class SessionRegistry:
    """Map account identifiers to live sessions.

    ``create`` and the bookkeeping part of ``remove`` run without awaiting, so
    on a single event loop every operation is atomic per account and no lock
    is shared between accounts.  Concurrent removals of the same account wait
    on the same teardown.
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger()
        self._sessions: Dict[str, SessionHandle] = {}
        self._closing: Dict[str, asyncio.Task] = {}

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, account_id: str, transport: Transport) -> SessionHandle:
        """Register a new session in ``INITIALIZING`` state."""
        if account_id in self._sessions:
            raise AlreadyExists(f"Session for account '{account_id}' is already live", account_id=account_id)
        if account_id in self._closing:
            raise AlreadyExists(f"Session for account '{account_id}' is still shutting down", account_id=account_id)
        handle = SessionHandle(account_id=account_id, transport=transport)
        self._sessions[account_id] = handle
        return handle

    def get(self, account_id: str) -> Optional[SessionHandle]:
        return self._sessions.get(account_id)

    def account_ids(self) -> List[str]:
        return list(self._sessions)

    def statuses(self) -> Dict[str, str]:
        """Return the cached status of every live session."""
        return {account_id: handle.status.value for account_id, handle in self._sessions.items()}

    async def remove(self, account_id: str) -> bool:
        """Tear down and forget a session; removing an unknown account is a no-op."""
        pending = self._closing.get(account_id)
        if pending is not None:
            await asyncio.shield(pending)
            return False
        handle = self._sessions.pop(account_id, None)
        if handle is None:
            return False
        teardown = asyncio.create_task(self._teardown(handle), name=f"session-teardown-{account_id}")
        self._closing[account_id] = teardown
        teardown.add_done_callback(lambda _task: self._closing.pop(account_id, None))
        await asyncio.shield(teardown)
        if self._closing.get(account_id) is teardown:
            del self._closing[account_id]
        return True

    async def clear(self) -> None:
        """Remove every live session (used at shutdown)."""
        await asyncio.gather(*(self.remove(account_id) for account_id in self.account_ids()))

    async def _teardown(self, handle: SessionHandle) -> None:
        task = handle.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - session tasks swallow their own errors
                self.logger.exception("Session task for account %s ended with an error", handle.account_id)
        try:
            await handle.transport.destroy()
        except Exception as exc:
            self.logger.warning("Error destroying transport for account %s: %s", handle.account_id, exc)
        finally:
            handle.qr_code = None
            handle.task = None
        self.logger.debug("Session for account %s released", handle.account_id)
