"""
Pydantic schemas for command payloads and transport message events.

Command payloads are validated before any state change; a failure surfaces
as :class:`async_whatsapp_service.errors.ValidationError`.  Inbound message
events are parsed with :class:`InboundMessageEvent` so that a malformed event
can be logged as a failed incoming entry instead of crashing the session task.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class AccountPayload(BaseModel):
    """Account definition used by ``addAccount``."""
    model_config = ConfigDict(str_strip_whitespace=True)
    name: str = Field(min_length=1)
    description: Optional[str] = ""


class WebhookPayload(BaseModel):
    """Webhook subscription used by ``addWebhook``."""
    model_config = ConfigDict(str_strip_whitespace=True)
    account_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    secret: Optional[str] = ""
    is_active: bool = True


class SendMessagePayload(BaseModel):
    """Outbound text message used by ``sendMessage``."""
    model_config = ConfigDict(str_strip_whitespace=True)
    account_id: str = Field(min_length=1)
    number: str = Field(min_length=1)
    message: str = Field(min_length=1)


class WebhookReplyPayload(SendMessagePayload):
    """Outbound message authorised by a webhook secret."""
    webhook_secret: str = Field(min_length=1)


class ChatInfo(BaseModel):
    id: str
    is_group: bool = False
    name: Optional[str] = None


class MediaPayload(BaseModel):
    mimetype: str
    data: Optional[str] = None
    filename: Optional[str] = None


class InboundMessageEvent(BaseModel):
    """Message event emitted by a transport for one account."""
    model_config = ConfigDict(populate_by_name=True)
    id: str = Field(min_length=1)
    from_: str = Field(alias="from", min_length=1)
    to: Optional[str] = None
    body: str = ""
    timestamp: Optional[int] = None
    type: str = "chat"
    chat: Optional[ChatInfo] = None
    media: Optional[MediaPayload] = None


def parse_payload(model: Type[ModelT], data: Optional[Dict[str, Any]]) -> ModelT:
    """Validate ``data`` against ``model`` raising the gateway ``ValidationError``."""
    if not isinstance(data, dict):
        raise ValidationError("payload must be an object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        missing = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        detail = ", ".join(missing) if missing else str(exc)
        raise ValidationError(f"invalid or missing fields: {detail}") from exc
