"""Conversion of inbound transport messages into durable log entries."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Set

from .dispatcher import WebhookDispatcher
from .errors import PersistenceError, ValidationError
from .logger import get_logger
from .models import InboundMessageEvent, parse_payload
from .persistence import Persistence, utc_now_iso


class IngestionPipeline:
    """Normalize, persist, then hand the entry to the dispatcher in the background.

    ``ingest`` returns as soon as the incoming entry is stored; webhook
    fan-out runs as a separate task so the session can process its next
    event immediately.
    """

    def __init__(self, persistence: Persistence, dispatcher: WebhookDispatcher, *, metrics=None, logger=None):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.logger = logger or get_logger()
        self._dispatch_tasks: Set[asyncio.Task] = set()

    @property
    def pending_dispatches(self) -> int:
        return len(self._dispatch_tasks)

    @staticmethod
    def normalize(account_id: str, data: Any) -> Dict[str, Any]:
        """Build an ``incoming`` log entry from a transport message event."""
        event = parse_payload(InboundMessageEvent, data)
        entry: Dict[str, Any] = {
            "account_id": account_id,
            "direction": "incoming",
            "message_id": event.id,
            "sender": event.from_,
            "recipient": event.to,
            "message": event.body,
            "timestamp": event.timestamp,
            "type": event.type,
            "chat_id": event.chat.id if event.chat else event.from_,
            "is_group": bool(event.chat and event.chat.is_group),
            "group_name": event.chat.name if event.chat and event.chat.is_group else None,
            "status": "success",
            "created_at": utc_now_iso(),
        }
        if event.media is not None:
            entry["media"] = event.media.model_dump(exclude_none=True)
        return entry

    async def ingest(self, account_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """Log one inbound message and schedule its webhook fan-out."""
        try:
            entry = self.normalize(account_id, data)
        except ValidationError as exc:
            self.logger.warning("Malformed message event for account %s: %s", account_id, exc)
            await self._record_failure(account_id, data, str(exc))
            return None

        try:
            await self.persistence.append_log(entry)
        except PersistenceError as exc:
            self.logger.exception("Failed to log incoming message for account %s", account_id)
            await self._record_failure(account_id, data, str(exc))
            return None

        if self.metrics is not None:
            self.metrics.inc_incoming(account_id, "success")
        self._spawn_dispatch(account_id, entry)
        return entry

    def _spawn_dispatch(self, account_id: str, entry: Dict[str, Any]) -> None:
        task = asyncio.create_task(
            self.dispatcher.dispatch(account_id, dict(entry)),
            name=f"webhook-dispatch-{account_id}",
        )
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _record_failure(self, account_id: str, data: Any, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_incoming(account_id, "failed")
        entry: Dict[str, Any] = {
            "account_id": account_id,
            "direction": "incoming",
            "status": "failed",
            "error_message": reason,
        }
        if isinstance(data, dict):
            entry["message_id"] = data.get("id") if isinstance(data.get("id"), str) else None
            entry["sender"] = data.get("from") if isinstance(data.get("from"), str) else None
            entry["message"] = data.get("body") if isinstance(data.get("body"), str) else None
        try:
            await self.persistence.append_log(entry)
            return
        except PersistenceError as exc:
            self.logger.warning(
                "Retrying failed incoming entry for account %s without event fields: %s", account_id, exc
            )

        # The event fields themselves may be what the store rejects
        minimal = {
            "account_id": account_id,
            "direction": "incoming",
            "status": "failed",
            "error_message": reason.encode("utf-8", "backslashreplace").decode("utf-8"),
        }
        try:
            await self.persistence.append_log(minimal)
        except PersistenceError as exc:
            self.logger.error("Could not record failed incoming message for account %s: %s", account_id, exc)

    async def drain(self) -> None:
        """Wait for every in-flight webhook fan-out."""
        while True:
            pending = [task for task in self._dispatch_tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
