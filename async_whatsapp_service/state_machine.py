"""Per-account connection lifecycle driven by transport events."""

from __future__ import annotations

from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from .errors import PersistenceError
from .logger import get_logger
from .persistence import Persistence
from .qr import render_qr_data_url
from .session import SessionHandle, SessionStatus
from .transport import EventKind, TransportEvent

ANY_STATUS: FrozenSet[SessionStatus] = frozenset(SessionStatus)

# event -> (statuses the event is accepted from, resulting status)
TRANSITIONS: Dict[EventKind, Tuple[FrozenSet[SessionStatus], SessionStatus]] = {
    EventKind.QR: (frozenset({SessionStatus.INITIALIZING, SessionStatus.QR_READY}), SessionStatus.QR_READY),
    EventKind.READY: (frozenset({SessionStatus.INITIALIZING, SessionStatus.QR_READY}), SessionStatus.READY),
    EventKind.AUTH_FAILURE: (ANY_STATUS, SessionStatus.AUTH_FAILED),
    EventKind.DISCONNECTED: (ANY_STATUS, SessionStatus.DISCONNECTED),
}

RECONNECTABLE_STATUSES: FrozenSet[SessionStatus] = frozenset({SessionStatus.READY, SessionStatus.QR_READY})
DOWNGRADE_STATUSES: FrozenSet[SessionStatus] = frozenset({SessionStatus.AUTH_FAILED, SessionStatus.DISCONNECTED})


def should_reconnect(status: Any) -> bool:
    """Return ``True`` when a persisted status must be re-attached at startup."""
    try:
        return SessionStatus(status) in RECONNECTABLE_STATUSES
    except ValueError:
        return False


def _phone_from_identity(identity: Any) -> Optional[str]:
    if isinstance(identity, dict):
        user = identity.get("user")
        if user is None and isinstance(identity.get("wid"), dict):
            user = identity["wid"].get("user")
        return str(user) if user is not None else None
    if identity is None:
        return None
    return str(identity)


class SessionStateMachine:
    """Apply lifecycle events to a session, store first and cache second."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
        logger=None,
    ):
        self.persistence = persistence
        self.qr_renderer = qr_renderer
        self.logger = logger or get_logger()

    async def apply(self, handle: SessionHandle, event: TransportEvent) -> bool:
        """Process a lifecycle event; return ``True`` when the status changed or was refreshed."""
        account_id = handle.account_id
        if event.kind is EventKind.AUTHENTICATED:
            self.logger.info("WhatsApp client authenticated for account %s", account_id)
            return False
        if event.kind not in TRANSITIONS:
            raise ValueError(f"{event.kind.value!r} is not a lifecycle event")

        sources, target = TRANSITIONS[event.kind]
        if handle.status not in sources:
            self.logger.warning(
                "Ignoring %s event for account %s in status %s",
                event.kind.value,
                account_id,
                handle.status.value,
            )
            return False

        fields, cached = self._effects(event)
        try:
            await self.persistence.update_account(account_id, status=target.value, **fields)
        except PersistenceError:
            self.logger.exception("Failed to persist %s for account %s", target.value, account_id)
            if target not in DOWNGRADE_STATUSES:
                return False

        previous = handle.status
        handle.status = target
        for name, value in cached.items():
            setattr(handle, name, value)
        if event.kind in (EventKind.AUTH_FAILURE, EventKind.DISCONNECTED):
            self.logger.warning(
                "Account %s: %s -> %s (%s)", account_id, previous.value, target.value, fields.get("error_message")
            )
        else:
            self.logger.info("Account %s: %s -> %s", account_id, previous.value, target.value)
        return True

    def _effects(self, event: TransportEvent) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Return the store columns and cached handle attributes for an event."""
        if event.kind is EventKind.QR:
            rendered = self.qr_renderer(str(event.data))
            return {"qr_code": rendered}, {"qr_code": rendered}
        if event.kind is EventKind.READY:
            phone = _phone_from_identity(event.data)
            return (
                {"phone_number": phone, "qr_code": None, "error_message": None},
                {"phone_number": phone, "qr_code": None},
            )
        reason = "" if event.data is None else str(event.data)
        return {"error_message": reason}, {}
