"""Fan-out of logged messages to the webhooks of an account."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import DeliveryError, PersistenceError
from .logger import get_logger
from .persistence import Persistence

DEFAULT_WEBHOOK_TIMEOUT = 10.0
WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"
ACCOUNT_ID_HEADER = "X-Account-ID"
SIGNATURE_HEADER = "X-Webhook-Signature"


def sign_body(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` HMAC signature of a request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookDispatcher:
    """Deliver one payload to every active webhook of an account.

    Each subscriber is attempted concurrently and records its own outcome as
    a ``webhook`` log entry, so a slow or failing subscriber never changes
    what is recorded for the others.  There is a single attempt per
    subscriber; failures are logged, never raised to the caller.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        metrics=None,
        logger=None,
        log_delivery_activity: bool = False,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.persistence = persistence
        self.timeout = float(timeout)
        self.metrics = metrics
        self.logger = logger or get_logger()
        self._log_delivery_activity = bool(log_delivery_activity)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if it was created here."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def dispatch(self, account_id: str, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Deliver ``payload`` to all active webhooks and return the recorded outcomes."""
        try:
            webhooks = await self.persistence.list_webhooks(account_id)
        except PersistenceError:
            self.logger.exception("Cannot load webhooks for account %s", account_id)
            return []
        active = [hook for hook in webhooks if hook.get("is_active")]
        if not active:
            return []

        body = json.dumps(payload, default=str).encode("utf-8")
        results = await asyncio.gather(
            *(self._deliver(account_id, hook, body, payload) for hook in active),
            return_exceptions=True,
        )
        outcomes: List[Dict[str, Any]] = []
        for hook, result in zip(active, results):
            if isinstance(result, BaseException):
                self.logger.error("Webhook %s for account %s crashed: %s", hook.get("id"), account_id, result)
                continue
            outcomes.append(result)
        return outcomes

    async def _deliver(
        self,
        account_id: str,
        hook: Dict[str, Any],
        body: bytes,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        secret = hook.get("secret") or ""
        headers = {
            "Content-Type": "application/json",
            WEBHOOK_SECRET_HEADER: secret,
            ACCOUNT_ID_HEADER: account_id,
        }
        if secret:
            headers[SIGNATURE_HEADER] = sign_body(body, secret)

        entry: Dict[str, Any] = {
            "account_id": account_id,
            "direction": "webhook",
            "message_id": payload.get("message_id"),
            "webhook_id": hook.get("id"),
            "webhook_url": hook.get("url"),
        }
        try:
            entry["response_status"] = await self._post(hook["url"], body, headers)
            entry["status"] = "success"
        except DeliveryError as exc:
            entry["status"] = "failed"
            entry["response_status"] = exc.response_status
            entry["error_message"] = str(exc)

        self._log_outcome(entry)
        if self.metrics is not None:
            self.metrics.inc_webhook(account_id, entry["status"])
        try:
            await self.persistence.append_log(entry)
        except PersistenceError:
            self.logger.exception("Failed to record webhook outcome for %s", hook.get("url"))
        return entry

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> int:
        session = await self._get_session()
        try:
            async with session.post(
                url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                status = resp.status
                await resp.read()
        except asyncio.TimeoutError as exc:
            raise DeliveryError(f"timed out after {self.timeout:g}s") from exc
        except (aiohttp.ClientError, ValueError, OSError) as exc:
            raise DeliveryError(str(exc) or exc.__class__.__name__) from exc
        if not 200 <= status < 300:
            raise DeliveryError(f"HTTP {status}", response_status=status)
        return status

    def _log_outcome(self, entry: Dict[str, Any]) -> None:
        url = entry.get("webhook_url") or "-"
        account = entry.get("account_id")
        if entry["status"] == "success":
            level = self.logger.info if self._log_delivery_activity else self.logger.debug
            level("Webhook delivery succeeded to %s (account=%s, status=%s)", url, account, entry.get("response_status"))
            return
        level = self.logger.warning if self._log_delivery_activity else self.logger.debug
        level("Webhook delivery failed to %s (account=%s): %s", url, account, entry.get("error_message"))
