"""Integration tests: logging -> Pipeline -> real transport -> collector."""

import asyncio
import json
import logging
import uuid

import httpx
import pytest
import websockets

from logrelay.backends.file import FileKV
from logrelay.backends.memory import MemoryKV
from logrelay.config import Options
from logrelay.pipeline import Pipeline
from logrelay.transport import HttpTransport, WebSocketTransport

# pylint: disable=missing-function-docstring

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FlakyCollector:
    """WebSocket collector that rejects the first `failures` batches."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.batches: list[str] = []
        self.rejected: list[str] = []

    async def handler(self, ws):
        async for msg in ws:
            if self.failures:
                self.failures -= 1
                self.rejected.append(msg)
                await ws.send(json.dumps({"status": 503}))
                continue
            self.batches.append(msg)
            await ws.send(json.dumps({"status": 200}))

    def lines(self) -> list[str]:
        return [line for batch in self.batches for line in batch.split("\n")]


def make_logger() -> logging.Logger:
    log = logging.getLogger(f"test.integration.{uuid.uuid4().hex[:8]}")
    log.setLevel(logging.INFO)
    log.propagate = False
    return log


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_websocket_collector_receives_all_lines_in_order():
    collector = FlakyCollector()
    log = make_logger()

    async with websockets.serve(collector.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        pipeline = Pipeline(
            Options(interval=0, trace=()),
            transport=WebSocketTransport(f"ws://127.0.0.1:{port}"),
            kv=MemoryKV(),
        )
        async with pipeline.attached(log, flush_timeout=2.0):
            for i in range(20):
                log.info("line %d", i)

    assert collector.lines() == [f"line {i}" for i in range(20)]


@pytest.mark.asyncio
async def test_websocket_collector_outage_is_retried_from_disk(tmp_path):
    """Rejected batches move to disk, are retried with backoff and arrive exactly once."""
    collector = FlakyCollector(failures=2)
    log = make_logger()
    kv = FileKV(tmp_path)

    async with websockets.serve(collector.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        pipeline = Pipeline(
            Options(interval=0.01, backoff=lambda i: i * 2, trace=()),
            transport=WebSocketTransport(f"ws://127.0.0.1:{port}"),
            kv=kv,
        )
        pipeline.attach(log)
        log.info("a")
        log.info("b")
        log.info("c")
        await asyncio.sleep(0)
        assert await pipeline.flush(timeout=3.0)
        await pipeline.aclose()

    assert len(collector.rejected) == 2
    assert collector.lines() == ["a", "b", "c"]
    assert json.loads(kv.get("logrelay-queue")) == []
    assert kv.get("logrelay-sent") is None


@pytest.mark.asyncio
async def test_http_collector_json_payload():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["content-type"] == "application/json"
        assert request.headers["authorization"] == "Bearer secret"
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    log = make_logger()
    pipeline = Pipeline(
        Options(interval=0, json=True, token="secret", trace=()),
        transport=HttpTransport("http://collector.test/logger", client=client),
        kv=MemoryKV(),
    )
    async with pipeline.attached(log, flush_timeout=2.0):
        log.info("user %s logged in", "ada")
        log.error("payment failed")

    messages = [m for body in bodies for m in body["messages"]]
    assert [(m["level"], m["message"]) for m in messages] == [
        ("info", "user ada logged in"),
        ("error", "payment failed"),
    ]
    assert all(m["logger"] == log.name for m in messages)
    await client.aclose()
