"""Error taxonomy shared by the gateway components."""

from __future__ import annotations

from typing import Optional


class GatewayError(RuntimeError):
    """Base class for every error raised by the gateway."""

    code = "gateway_error"

    def __init__(self, message: str, *, account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class ValidationError(GatewayError):
    """Required input is missing or malformed; nothing was changed."""

    code = "validation_error"


class AlreadyExists(GatewayError):
    """A live session is already registered for the account."""

    code = "already_exists"


class SessionNotFound(GatewayError):
    """No live session exists for the account."""

    code = "session_not_found"

    def __init__(self, account_id: str):
        super().__init__("WhatsApp client not found for this account", account_id=account_id)


class SessionNotReady(GatewayError):
    """The account session exists but is not ``READY``."""

    code = "session_not_ready"

    def __init__(self, account_id: str, status: str):
        super().__init__(f"WhatsApp client is not ready. Current status: {status}", account_id=account_id)
        self.status = status


class TransportError(GatewayError):
    """The underlying transport failed to initialise or to send."""

    code = "transport_error"


class DeliveryError(GatewayError):
    """A webhook subscriber was unreachable or answered with a non-2xx status."""

    code = "delivery_error"

    def __init__(self, message: str, *, response_status: Optional[int] = None):
        super().__init__(message)
        self.response_status = response_status


class PersistenceError(GatewayError):
    """A store operation failed."""

    code = "persistence_error"


class InvalidWebhookSecret(GatewayError):
    """The secret does not match any active webhook of the account."""

    code = "invalid_webhook_secret"
