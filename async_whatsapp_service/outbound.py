"""Readiness-gated outbound sends and destination normalization."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from .errors import PersistenceError, SessionNotFound, SessionNotReady, TransportError, ValidationError
from .logger import get_logger
from .persistence import Persistence
from .session import SessionRegistry, SessionStatus

DEFAULT_COUNTRY_CODE = "+91"
DEFAULT_ADDRESS_SUFFIX = "@c.us"

_NOT_DIALABLE = re.compile(r"[^\d+]")
_NOT_DIGIT = re.compile(r"\D")


def normalize_address(
    number: Any,
    *,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
    suffix: str = DEFAULT_ADDRESS_SUFFIX,
) -> str:
    """Turn a phone number into a transport address.

    Keeps the digits and a leading ``+``; numbers without ``+`` get the
    default country code.  An address that already carries ``suffix`` is
    accepted unchanged, so the function is idempotent.
    """
    raw = str(number or "").strip()
    if suffix and raw.endswith(suffix):
        raw = raw[: -len(suffix)]
    cleaned = _NOT_DIALABLE.sub("", raw)
    digits = _NOT_DIGIT.sub("", cleaned)
    if not digits:
        raise ValidationError(f"Destination {number!r} contains no digits")
    if cleaned.startswith("+"):
        prefix = "+"
    else:
        prefix = "+" + _NOT_DIGIT.sub("", default_country_code or "")
    return f"{prefix}{digits}{suffix}"


def _message_id(result: Dict[str, Any]) -> Optional[str]:
    value = result.get("id")
    if isinstance(value, dict):
        value = value.get("_serialized") or value.get("id")
    return None if value is None else str(value)


class OutboundSender:
    """Send text messages through live, ``READY`` sessions only."""

    def __init__(
        self,
        registry: SessionRegistry,
        persistence: Persistence,
        *,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        address_suffix: str = DEFAULT_ADDRESS_SUFFIX,
        metrics=None,
        logger=None,
    ):
        self.registry = registry
        self.persistence = persistence
        self.default_country_code = default_country_code
        self.address_suffix = address_suffix
        self.metrics = metrics
        self.logger = logger or get_logger()

    def normalize(self, number: Any) -> str:
        return normalize_address(
            number,
            default_country_code=self.default_country_code,
            suffix=self.address_suffix,
        )

    async def send(self, account_id: str, number: str, message: str) -> Dict[str, Any]:
        """Send ``message`` to ``number`` and return ``{success, message_id, timestamp}``."""
        if not account_id or not message:
            raise ValidationError("account_id and message are required")
        address = self.normalize(number)

        handle = self.registry.get(account_id)
        if handle is None:
            raise SessionNotFound(account_id)

        try:
            if handle.status is not SessionStatus.READY:
                raise SessionNotReady(account_id, handle.status.value)
            self.logger.debug("Sending message to %s from account %s", address, account_id)
            try:
                result = await handle.transport.send_message(address, message)
            except TransportError:
                raise
            except Exception as exc:
                raise TransportError(f"send failed: {exc}", account_id=account_id) from exc
        except (SessionNotReady, TransportError) as exc:
            if isinstance(exc, TransportError):
                self.logger.error("Transport send failed for account %s: %s", account_id, exc)
            await self._record(
                {
                    "account_id": account_id,
                    "direction": "outgoing",
                    "recipient": address,
                    "message": message,
                    "type": "text",
                    "status": "failed",
                    "error_message": str(exc),
                }
            )
            raise

        result = result or {}
        message_id = _message_id(result)
        await self._record(
            {
                "account_id": account_id,
                "direction": "outgoing",
                "message_id": message_id,
                "sender": result.get("from"),
                "recipient": result.get("to") or address,
                "message": message,
                "timestamp": result.get("timestamp"),
                "type": "text",
                "status": "success",
            }
        )
        return {"success": True, "message_id": message_id, "timestamp": result.get("timestamp")}

    async def _record(self, entry: Dict[str, Any]) -> None:
        if self.metrics is not None:
            self.metrics.inc_outgoing(entry["account_id"], entry["status"])
        try:
            await self.persistence.append_log(entry)
        except PersistenceError:
            self.logger.exception("Failed to log outgoing message for account %s", entry["account_id"])
