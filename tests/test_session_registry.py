import asyncio
import types

import pytest

from async_whatsapp_service.errors import AlreadyExists
from async_whatsapp_service.session import SessionRegistry, SessionStatus
from async_whatsapp_service.transport import EventKind, Transport, TransportConfig


class DummyTransport(Transport):
    def __init__(self, account_id: str, destroy_delay: float = 0.0, destroy_error: Exception | None = None):
        super().__init__(TransportConfig(account_id=account_id, session_dir=f"/tmp/{account_id}"))
        self.destroy_delay = destroy_delay
        self.destroy_error = destroy_error
        self.destroy_calls = 0

    async def initialize(self):
        return None

    async def send_message(self, address, body):
        return {"id": "m1", "to": address}

    async def destroy(self):
        self.destroy_calls += 1
        if self.destroy_delay:
            await asyncio.sleep(self.destroy_delay)
        if self.destroy_error:
            raise self.destroy_error


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


@pytest.mark.asyncio
async def test_create_get_and_statuses():
    registry = SessionRegistry(logger=quiet_logger())
    handle = registry.create("acc1", DummyTransport("acc1"))

    assert handle.status is SessionStatus.INITIALIZING
    assert registry.get("acc1") is handle
    assert "acc1" in registry
    assert len(registry) == 1
    assert registry.statuses() == {"acc1": "initializing"}
    assert registry.get("missing") is None


@pytest.mark.asyncio
async def test_create_twice_raises_already_exists():
    registry = SessionRegistry(logger=quiet_logger())
    registry.create("acc1", DummyTransport("acc1"))
    with pytest.raises(AlreadyExists):
        registry.create("acc1", DummyTransport("acc1"))


@pytest.mark.asyncio
async def test_remove_destroys_transport_and_cancels_task():
    registry = SessionRegistry(logger=quiet_logger())
    transport = DummyTransport("acc1")
    handle = registry.create("acc1", transport)

    async def consume():
        while True:
            await transport.next_event()

    handle.task = asyncio.create_task(consume())
    handle.qr_code = "data:image/png;base64,xx"

    assert await registry.remove("acc1") is True
    assert transport.destroy_calls == 1
    assert handle.task is None
    assert handle.qr_code is None
    assert "acc1" not in registry
    assert await registry.remove("acc1") is False


@pytest.mark.asyncio
async def test_concurrent_removals_share_one_teardown():
    registry = SessionRegistry(logger=quiet_logger())
    transport = DummyTransport("acc1", destroy_delay=0.05)
    registry.create("acc1", transport)

    results = await asyncio.gather(registry.remove("acc1"), registry.remove("acc1"), registry.remove("acc1"))

    assert sorted(results) == [False, False, True]
    assert transport.destroy_calls == 1


@pytest.mark.asyncio
async def test_create_refused_while_teardown_is_pending():
    registry = SessionRegistry(logger=quiet_logger())
    registry.create("acc1", DummyTransport("acc1", destroy_delay=0.05))

    removal = asyncio.create_task(registry.remove("acc1"))
    await asyncio.sleep(0)
    with pytest.raises(AlreadyExists):
        registry.create("acc1", DummyTransport("acc1"))
    await removal

    handle = registry.create("acc1", DummyTransport("acc1"))
    assert handle.status is SessionStatus.INITIALIZING


@pytest.mark.asyncio
async def test_destroy_errors_do_not_prevent_removal():
    registry = SessionRegistry(logger=quiet_logger())
    registry.create("acc1", DummyTransport("acc1", destroy_error=RuntimeError("browser gone")))
    assert await registry.remove("acc1") is True
    assert "acc1" not in registry


@pytest.mark.asyncio
async def test_accounts_are_independent():
    registry = SessionRegistry(logger=quiet_logger())
    slow = DummyTransport("slow", destroy_delay=0.05)
    registry.create("slow", slow)
    registry.create("fast", DummyTransport("fast"))

    removal = asyncio.create_task(registry.remove("slow"))
    await asyncio.sleep(0)
    # Another account can be created and queried while "slow" is tearing down
    registry.create("other", DummyTransport("other"))
    assert registry.get("fast") is not None
    await removal

    await registry.clear()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_emit_preserves_order():
    transport = DummyTransport("acc1")
    transport.emit(EventKind.QR, "ABC")
    transport.emit("ready", {"user": "1555"})
    first = await transport.next_event()
    second = await transport.next_event()
    assert (first.kind, first.data) == (EventKind.QR, "ABC")
    assert second.kind is EventKind.READY
