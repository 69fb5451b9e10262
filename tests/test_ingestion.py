import asyncio
import types
from typing import Any, Dict, List

import pytest

from async_whatsapp_service.ingestion import IngestionPipeline
from async_whatsapp_service.persistence import Persistence


class DummyDispatcher:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[tuple] = []
        self.finished = 0

    async def dispatch(self, account_id: str, payload: Dict[str, Any]):
        self.calls.append((account_id, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        self.finished += 1
        return []


class DummyMetrics:
    def __init__(self):
        self.incoming: List[tuple] = []

    def inc_incoming(self, account_id: str, status: str = "success"):
        self.incoming.append((account_id, status))


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


async def make_pipeline(tmp_path, delay: float = 0.0):
    store = Persistence(str(tmp_path / "ingest.db"))
    await store.init_db()
    dispatcher = DummyDispatcher(delay)
    metrics = DummyMetrics()
    pipeline = IngestionPipeline(store, dispatcher, metrics=metrics, logger=quiet_logger())
    return store, dispatcher, metrics, pipeline


@pytest.mark.asyncio
async def test_direct_message_is_logged_and_dispatched(tmp_path):
    store, dispatcher, metrics, pipeline = await make_pipeline(tmp_path)
    entry = await pipeline.ingest(
        "acc1",
        {"id": "m1", "from": "15550001111@c.us", "to": "15550002222@c.us", "body": "hi", "timestamp": 1700000000},
    )

    assert entry["chat_id"] == "15550001111@c.us"
    assert entry["is_group"] is False
    assert entry["group_name"] is None

    logs = await store.list_logs("acc1")
    assert len(logs) == 1
    assert logs[0]["direction"] == "incoming"
    assert logs[0]["message"] == "hi"
    assert logs[0]["sender"] == "15550001111@c.us"
    assert logs[0]["status"] == "success"

    await pipeline.drain()
    assert dispatcher.calls == [("acc1", entry)]
    assert metrics.incoming == [("acc1", "success")]


@pytest.mark.asyncio
async def test_group_message_with_media(tmp_path):
    store, _, _, pipeline = await make_pipeline(tmp_path)
    await pipeline.ingest(
        "acc1",
        {
            "id": "m2",
            "from": "15550001111@c.us",
            "body": "",
            "type": "image",
            "chat": {"id": "team@g.us", "is_group": True, "name": "Team"},
            "media": {"mimetype": "image/jpeg", "data": "aGk=", "filename": "pic.jpg"},
        },
    )
    await pipeline.drain()

    [log] = await store.list_logs("acc1")
    assert log["chat_id"] == "team@g.us"
    assert log["is_group"] is True
    assert log["group_name"] == "Team"
    assert log["type"] == "image"
    assert log["media"] == {"mimetype": "image/jpeg", "data": "aGk=", "filename": "pic.jpg"}


@pytest.mark.asyncio
async def test_ingest_returns_before_dispatch_completes(tmp_path):
    _, dispatcher, _, pipeline = await make_pipeline(tmp_path, delay=0.05)
    await pipeline.ingest("acc1", {"id": "m1", "from": "1@c.us", "body": "a"})
    assert dispatcher.finished == 0
    assert pipeline.pending_dispatches == 1

    await pipeline.drain()
    assert dispatcher.finished == 1
    assert pipeline.pending_dispatches == 0


@pytest.mark.asyncio
async def test_malformed_event_is_logged_as_failed(tmp_path):
    store, dispatcher, metrics, pipeline = await make_pipeline(tmp_path)
    assert await pipeline.ingest("acc1", {"body": "no id or sender"}) is None

    [log] = await store.list_logs("acc1")
    assert log["status"] == "failed"
    assert log["direction"] == "incoming"
    assert log["message"] == "no id or sender"
    assert "invalid or missing fields" in log["error_message"]
    assert dispatcher.calls == []
    assert metrics.incoming == [("acc1", "failed")]


@pytest.mark.asyncio
async def test_non_mapping_event_is_logged_as_failed(tmp_path):
    store, _, _, pipeline = await make_pipeline(tmp_path)
    assert await pipeline.ingest("acc1", "garbage") is None
    [log] = await store.list_logs("acc1")
    assert log["status"] == "failed"
    assert log["message"] is None


@pytest.mark.asyncio
async def test_unencodable_body_is_logged_as_failed(tmp_path):
    store, dispatcher, metrics, pipeline = await make_pipeline(tmp_path)
    assert await pipeline.ingest("acc1", {"id": "m1", "from": "1@c.us", "body": "bad \ud800"}) is None

    [log] = await store.list_logs("acc1")
    assert log["direction"] == "incoming"
    assert log["status"] == "failed"
    assert log["message"] is None
    assert log["error_message"]
    assert dispatcher.calls == []
    assert metrics.incoming == [("acc1", "failed")]


@pytest.mark.asyncio
async def test_out_of_range_timestamp_is_logged_as_failed(tmp_path):
    store, dispatcher, _, pipeline = await make_pipeline(tmp_path)
    assert await pipeline.ingest("acc1", {"id": "m1", "from": "1@c.us", "body": "hi", "timestamp": 2**64}) is None

    [log] = await store.list_logs("acc1")
    assert log["status"] == "failed"
    assert log["message"] == "hi"
    assert log["message_id"] == "m1"
    assert log["timestamp"] is None
    assert "store operation failed" in log["error_message"]
    assert dispatcher.calls == []
