import asyncio
import os
import logging
import signal

from async_whatsapp_service.config_loader import load_settings, resolve_factory
from async_whatsapp_service.core import AsyncWhatsAppCore
from async_whatsapp_service.logger import get_logger

# Configure logging level from environment
log_level = os.getenv("GWA_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_service(settings: dict[str, object]) -> AsyncWhatsAppCore:
    service_kwargs = dict(
        db_path=settings["db_path"],
        transport_factory=resolve_factory(settings.get("transport_factory")),
        sessions_dir=settings.get("sessions_dir") or "./sessions",
        default_country_code=settings.get("default_country_code") or "+91",
        address_suffix=settings.get("address_suffix") or "@c.us",
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )
    webhook_timeout = settings.get("webhook_timeout")
    if webhook_timeout is not None:
        service_kwargs["webhook_timeout"] = float(webhook_timeout)
    return AsyncWhatsAppCore(**service_kwargs)


async def run_service(settings: dict[str, object]) -> None:
    """Start the gateway and keep it running until SIGINT or SIGTERM."""
    service = build_service(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    await service.start()
    try:
        await stop_event.wait()
    finally:
        get_logger().info("Shutting down gracefully...")
        await service.stop()


if __name__ == "__main__":
    asyncio.run(run_service(load_settings()))
