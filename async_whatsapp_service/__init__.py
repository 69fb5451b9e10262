"""Multi-account WhatsApp gateway with durable logging and webhook fan-out."""

from .core import AsyncWhatsAppCore
from .session import SessionStatus

__all__ = ["AsyncWhatsAppCore", "SessionStatus"]
