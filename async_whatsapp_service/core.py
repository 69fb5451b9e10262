"""Core orchestration logic for the multi-account WhatsApp gateway."""

from __future__ import annotations

import asyncio
import hmac
import json
import os
import uuid
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .dispatcher import DEFAULT_WEBHOOK_TIMEOUT, WebhookDispatcher
from .errors import (
    AlreadyExists,
    GatewayError,
    InvalidWebhookSecret,
    PersistenceError,
    TransportError,
    ValidationError,
)
from .ingestion import IngestionPipeline
from .logger import get_logger
from .models import AccountPayload, SendMessagePayload, WebhookPayload, WebhookReplyPayload, parse_payload
from .outbound import DEFAULT_ADDRESS_SUFFIX, DEFAULT_COUNTRY_CODE, OutboundSender
from .persistence import Persistence
from .prometheus import GatewayMetrics
from .qr import render_qr_data_url
from .session import SessionHandle, SessionRegistry, SessionStatus
from .state_machine import SessionStateMachine, should_reconnect
from .transport import EventKind, Transport, TransportConfig, TransportEvent, TransportFactory


class AsyncWhatsAppCore:
    """Coordinate account sessions, message logging, webhook fan-out and sends."""

    def __init__(
        self,
        *,
        transport_factory: Optional[TransportFactory] = None,
        db_path: str | None = "/data/whatsapp_service.db",
        sessions_dir: str = "./sessions",
        logger=None,
        metrics: GatewayMetrics | None = None,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        address_suffix: str = DEFAULT_ADDRESS_SUFFIX,
        webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
        log_delivery_activity: bool = False,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Prepare the runtime collaborators; nothing is started until :meth:`start`."""
        self.logger = logger or get_logger()
        self.metrics = metrics or GatewayMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self.registry = SessionRegistry(logger=self.logger)
        self.state_machine = SessionStateMachine(self.persistence, qr_renderer=qr_renderer, logger=self.logger)
        self.dispatcher = WebhookDispatcher(
            self.persistence,
            timeout=webhook_timeout,
            metrics=self.metrics,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
            session=http_session,
        )
        self.ingestion = IngestionPipeline(self.persistence, self.dispatcher, metrics=self.metrics, logger=self.logger)
        self.outbound = OutboundSender(
            self.registry,
            self.persistence,
            default_country_code=default_country_code,
            address_suffix=address_suffix,
            metrics=self.metrics,
            logger=self.logger,
        )
        self._transport_factory = transport_factory
        self._sessions_dir = sessions_dir

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Initialise persistence."""
        await self.persistence.init_db()

    async def start(self) -> List[str]:
        """Initialise storage and re-attach the accounts that were connected."""
        self.logger.info("Initializing WhatsApp gateway...")
        await self.init()
        reconnected = await self.reconnect_existing_accounts()
        self.logger.info("Gateway started with %d live session(s)", len(self.registry))
        return reconnected

    async def stop(self) -> None:
        """Tear down every session, wait for in-flight fan-outs and close HTTP resources."""
        await self.registry.clear()
        await self.ingestion.drain()
        await self.dispatcher.close()
        self._refresh_sessions_gauge()

    # ------------------------------------------------------------------ sessions
    def _session_dir(self, account_id: str) -> str:
        return os.path.join(self._sessions_dir, account_id)

    async def _attach(self, account_id: str, session_dir: str) -> SessionHandle:
        """Register a fresh session, start its event task and initialise the transport."""
        if self._transport_factory is None:
            raise TransportError("No transport factory configured", account_id=account_id)
        try:
            transport = self._transport_factory(TransportConfig(account_id=account_id, session_dir=session_dir))
        except Exception as exc:
            raise TransportError(f"cannot build transport: {exc}", account_id=account_id) from exc
        try:
            handle = self.registry.create(account_id, transport)
        except AlreadyExists:
            await self._discard(transport)
            raise
        handle.task = asyncio.create_task(self._run_session(handle), name=f"session-{account_id}")
        self._refresh_sessions_gauge()
        try:
            await transport.initialize()
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"initialize failed: {exc}", account_id=account_id) from exc
        return handle

    async def _discard(self, transport: Transport) -> None:
        """Destroy a transport that never got registered."""
        try:
            await transport.destroy()
        except Exception as exc:
            self.logger.warning(
                "Error destroying unused transport for account %s: %s", transport.config.account_id, exc
            )

    async def _run_session(self, handle: SessionHandle) -> None:
        """Consume the events of one account in arrival order until cancelled."""
        while True:
            event = await handle.transport.next_event()
            try:
                await self._handle_event(handle, event)
            except Exception:
                self.logger.exception(
                    "Error handling %s event for account %s", event.kind.value, handle.account_id
                )

    async def _handle_event(self, handle: SessionHandle, event: TransportEvent) -> None:
        if event.kind is EventKind.MESSAGE:
            await self.ingestion.ingest(handle.account_id, event.data)
            return
        if await self.state_machine.apply(handle, event):
            self._refresh_sessions_gauge()

    async def _mark_disconnected(self, account_id: str, reason: str) -> None:
        """Release a failed session and persist ``DISCONNECTED`` with the reason."""
        await self.registry.remove(account_id)
        try:
            await self.persistence.update_account(
                account_id,
                status=SessionStatus.DISCONNECTED.value,
                error_message=reason,
            )
        except PersistenceError:
            self.logger.exception("Failed to mark account %s as disconnected", account_id)
        self._refresh_sessions_gauge()

    async def reconnect_existing_accounts(self) -> List[str]:
        """Re-attach every persisted account whose last status was READY or QR_READY."""
        try:
            accounts = await self.persistence.list_accounts()
        except PersistenceError:
            self.logger.exception("Error loading existing accounts")
            return []
        targets = [acc for acc in accounts if should_reconnect(acc.get("status"))]
        skipped = len(accounts) - len(targets)
        if skipped:
            self.logger.debug("Leaving %d account(s) untouched at startup", skipped)
        results = await asyncio.gather(*(self._reconnect(acc) for acc in targets))
        return [acc["id"] for acc, ok in zip(targets, results) if ok]

    async def _reconnect(self, account: Dict[str, Any]) -> bool:
        account_id = account["id"]
        try:
            await self._attach(account_id, account.get("session_dir") or self._session_dir(account_id))
        except AlreadyExists:
            self.logger.warning("Account %s already has a live session", account_id)
            return False
        except TransportError as exc:
            self.logger.error("Error reconnecting to account %s: %s", account_id, exc)
            await self._mark_disconnected(account_id, str(exc))
            return False
        self.logger.info("Reconnected to existing account: %s (%s)", account.get("name"), account_id)
        return True

    def _refresh_sessions_gauge(self) -> None:
        self.metrics.set_sessions(self.registry.statuses().values())

    # ------------------------------------------------------------------ accounts
    async def create_account(self, name: str, description: str = "") -> Dict[str, Any]:
        """Persist a new account and start pairing its transport."""
        payload = parse_payload(AccountPayload, {"name": name, "description": description})
        account_id = str(uuid.uuid4())
        session_dir = self._session_dir(account_id)
        account = await self.persistence.add_account(
            {
                "id": account_id,
                "name": payload.name,
                "description": payload.description or "",
                "status": SessionStatus.INITIALIZING.value,
                "session_dir": session_dir,
            }
        )
        try:
            await self._attach(account_id, session_dir)
        except TransportError as exc:
            self.logger.error("Error creating WhatsApp account %s: %s", account_id, exc)
            await self._mark_disconnected(account_id, str(exc))
            raise
        return await self.persistence.get_account(account_id) or account

    async def reconnect_account(self, account_id: str) -> Dict[str, Any]:
        """Explicitly re-attach an account, whatever its last status."""
        account = await self.persistence.get_account(account_id)
        if account is None:
            raise ValidationError(f"Account '{account_id}' not found", account_id=account_id)
        await self.registry.remove(account_id)
        await self.persistence.update_account(
            account_id,
            status=SessionStatus.INITIALIZING.value,
            qr_code=None,
            error_message=None,
        )
        try:
            await self._attach(account_id, account.get("session_dir") or self._session_dir(account_id))
        except TransportError as exc:
            await self._mark_disconnected(account_id, str(exc))
            raise
        return await self.persistence.get_account(account_id) or account

    async def delete_account(self, account_id: str) -> bool:
        """Stop the account session and delete it with its webhooks; logs are kept."""
        removed = await self.registry.remove(account_id)
        deleted = await self.persistence.delete_account(account_id)
        self._refresh_sessions_gauge()
        return removed or deleted

    def get_qr_code(self, account_id: str) -> Optional[str]:
        handle = self.registry.get(account_id)
        return handle.qr_code if handle else None

    def get_account_status(self, account_id: str) -> Optional[str]:
        handle = self.registry.get(account_id)
        return handle.status.value if handle else None

    def get_all_account_statuses(self) -> Dict[str, str]:
        return self.registry.statuses()

    # ------------------------------------------------------------------ webhooks
    async def add_webhook(
        self,
        account_id: str,
        url: str,
        secret: str = "",
        is_active: bool = True,
    ) -> Dict[str, Any]:
        payload = parse_payload(
            WebhookPayload,
            {"account_id": account_id, "url": url, "secret": secret, "is_active": is_active},
        )
        if await self.persistence.get_account(payload.account_id) is None:
            raise ValidationError(f"Account '{payload.account_id}' not found", account_id=payload.account_id)
        return await self.persistence.add_webhook(
            {
                "id": str(uuid.uuid4()),
                "account_id": payload.account_id,
                "url": payload.url,
                "secret": payload.secret or "",
                "is_active": payload.is_active,
            }
        )

    async def toggle_webhook(self, webhook_id: str) -> Dict[str, Any]:
        webhook = await self.persistence.get_webhook(webhook_id)
        if webhook is None:
            raise ValidationError(f"Webhook '{webhook_id}' not found")
        updated = await self.persistence.update_webhook(webhook_id, is_active=not webhook["is_active"])
        return updated or webhook

    async def webhook_secrets(self, account_id: str) -> List[Dict[str, Any]]:
        webhooks = await self.persistence.list_webhooks(account_id)
        return [
            {"id": hook["id"], "url": hook["url"], "secret": hook["secret"], "is_active": hook["is_active"]}
            for hook in webhooks
        ]

    async def record_webhook_incoming(self, account_id: str, payload: Any) -> int:
        """Log a payload received on the public webhook endpoint of an account."""
        if not account_id:
            raise ValidationError("account_id is required")
        return await self.persistence.append_log(
            {
                "account_id": account_id,
                "direction": "webhook_incoming",
                "status": "success",
                "message": json.dumps(payload, default=str),
            }
        )

    # ------------------------------------------------------------------ messages
    async def send_message(self, account_id: str, number: str, message: str) -> Dict[str, Any]:
        payload = parse_payload(SendMessagePayload, {"account_id": account_id, "number": number, "message": message})
        return await self.outbound.send(payload.account_id, payload.number, payload.message)

    async def webhook_reply(
        self,
        account_id: str,
        number: str,
        message: str,
        webhook_secret: str,
    ) -> Dict[str, Any]:
        """Send a message on behalf of a subscriber authenticated by its webhook secret."""
        payload = parse_payload(
            WebhookReplyPayload,
            {"account_id": account_id, "number": number, "message": message, "webhook_secret": webhook_secret},
        )
        webhooks = await self.persistence.list_webhooks(payload.account_id)
        authorised = any(
            hook["is_active"]
            and hook["secret"]
            and hmac.compare_digest(hook["secret"].encode("utf-8"), payload.webhook_secret.encode("utf-8"))
            for hook in webhooks
        )
        if not authorised:
            self.logger.warning("Invalid webhook secret for account %s", payload.account_id)
            raise InvalidWebhookSecret("Invalid webhook secret", account_id=payload.account_id)
        return await self.outbound.send(payload.account_id, payload.number, payload.message)

    async def stats(self) -> Dict[str, Any]:
        """Aggregate counters over the existing accounts; logs of deleted accounts are ignored."""
        accounts = await self.persistence.list_accounts()
        per_account = await asyncio.gather(*(self.persistence.message_stats(acc["id"]) for acc in accounts))
        total = sum(counters["total"] for counters in per_account)
        success = sum(counters["success"] for counters in per_account)
        return {
            "total_accounts": len(accounts),
            "active_accounts": sum(1 for acc in accounts if acc.get("status") == SessionStatus.READY.value),
            "total_messages": total,
            "success_rate": round(success / total * 100) if total else 0,
        }

    # ------------------------------------------------------------------ commands
    @staticmethod
    def _require(payload: Dict[str, Any], key: str) -> Any:
        value = payload.get(key)
        if value is None or value == "":
            raise ValidationError(f"missing '{key}'")
        return value

    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload if isinstance(payload, dict) else {}
        try:
            return await self._dispatch_command(cmd, payload)
        except GatewayError as exc:
            return {"ok": False, "error": str(exc), "error_code": exc.code}

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "addAccount":
            account = await self.create_account(payload.get("name") or "", payload.get("description") or "")
            return {"ok": True, "account": account}
        if cmd == "listAccounts":
            return {"ok": True, "accounts": await self.persistence.list_accounts()}
        if cmd == "getAccount":
            account = await self.persistence.get_account(self._require(payload, "id"))
            if account is None:
                return {"ok": False, "error": "account not found"}
            return {"ok": True, "account": account}
        if cmd == "deleteAccount":
            await self.delete_account(self._require(payload, "id"))
            return {"ok": True}
        if cmd == "reconnectAccount":
            account = await self.reconnect_account(self._require(payload, "id"))
            return {"ok": True, "account": account}
        if cmd == "accountStatus":
            account_id = payload.get("id")
            if account_id:
                return {"ok": True, "status": self.get_account_status(account_id)}
            return {"ok": True, "statuses": self.get_all_account_statuses()}
        if cmd == "getQrCode":
            qr_code = self.get_qr_code(self._require(payload, "id"))
            if not qr_code:
                return {"ok": False, "error": "QR code not available"}
            return {"ok": True, "qr_code": qr_code}
        if cmd == "addWebhook":
            webhook = await self.add_webhook(
                payload.get("account_id") or "",
                payload.get("url") or "",
                payload.get("secret") or "",
                payload.get("is_active") is not False,
            )
            return {"ok": True, "webhook": webhook}
        if cmd == "listWebhooks":
            webhooks = await self.persistence.list_webhooks(self._require(payload, "account_id"))
            return {"ok": True, "webhooks": webhooks}
        if cmd == "toggleWebhook":
            return {"ok": True, "webhook": await self.toggle_webhook(self._require(payload, "id"))}
        if cmd == "deleteWebhook":
            await self.persistence.delete_webhook(self._require(payload, "id"))
            return {"ok": True}
        if cmd == "webhookSecrets":
            secrets = await self.webhook_secrets(self._require(payload, "account_id"))
            return {"ok": True, "webhooks": secrets}
        if cmd == "sendMessage":
            result = await self.send_message(payload.get("account_id"), payload.get("number"), payload.get("message"))
            return {"ok": True, **result}
        if cmd == "webhookReply":
            result = await self.webhook_reply(
                payload.get("account_id"),
                payload.get("number"),
                payload.get("message"),
                payload.get("webhook_secret"),
            )
            return {"ok": True, **result}
        if cmd == "webhookIncoming":
            log_id = await self.record_webhook_incoming(self._require(payload, "account_id"), payload.get("payload"))
            return {"ok": True, "id": log_id}
        if cmd == "listLogs":
            try:
                limit = int(payload.get("limit") or 100)
            except (TypeError, ValueError):
                limit = 100
            logs = await self.persistence.list_logs(self._require(payload, "account_id"), limit)
            return {"ok": True, "logs": logs}
        if cmd == "purgeLogs":
            removed = await self.persistence.purge_logs(self._require(payload, "account_id"))
            return {"ok": True, "removed": removed}
        if cmd == "stats":
            account_id = payload.get("account_id")
            if account_id:
                counters = await self.persistence.message_stats(account_id)
                return {"ok": True, "account_id": account_id, **counters}
            return {"ok": True, **(await self.stats())}
        return {"ok": False, "error": "unknown command"}
