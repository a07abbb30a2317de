"""Tests for logrelay.dispatcher (Dispatcher)."""

import asyncio
import json

import pytest

from logrelay.backends.memory import MemoryKV
from logrelay.config import Options
from logrelay.dispatcher import Dispatcher, DispatcherState
from logrelay.memory import VolatileQueue
from logrelay.storage import DurableQueue
from logrelay.types import PersistMode

# pylint: disable=protected-access

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Answers with queued statuses (200 once they run out) and records every call."""

    def __init__(self, *script):
        self.script = list(script)
        self.sent = []
        self.headers = []
        self.release = asyncio.Event()

    async def send(self, content, *, timeout=None, headers=None):
        self.sent.append(content)
        self.headers.append(dict(headers or {}))
        step = self.script.pop(0) if self.script else 200
        if step == "hang":
            await asyncio.sleep(3600)
        if step == "gate":
            await self.release.wait()
            return 200
        if isinstance(step, BaseException):
            raise step
        return step

    async def close(self):
        pass


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make(transport, *, kv=None, **kwargs):
    """Build a dispatcher the way Pipeline.attach does."""
    kwargs.setdefault("interval", 0)
    kwargs.setdefault("backoff", lambda i: i * 2)
    options = Options(**kwargs).resolved()
    storage = None
    if options.persist != PersistMode.NEVER:
        storage = DurableQueue(kv if kv is not None else MemoryKV(), options.capacity)
    memory = VolatileQueue(
        options.capacity, evict_on_overflow=options.persist == PersistMode.NEVER
    )
    return Dispatcher(memory, storage, transport, options)


def submit(dispatcher, *entries):
    for e in entries:
        dispatcher.receiver.push(e)
        dispatcher.send()


# ---------------------------------------------------------------------------
# Send loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_entries_delivered_in_order():
    """Without failures the transport sees entries in submission order."""
    transport = ScriptedTransport()
    d = make(transport)
    submit(d, "a")
    await wait_until(lambda: d.state == DispatcherState.IDLE)
    submit(d, "b", "c")
    await wait_until(lambda: not d.has_backlog())
    assert "\n".join(transport.sent).split("\n") == ["a", "b", "c"]
    d.close()


@pytest.mark.asyncio
async def test_one_batch_in_flight():
    """send() while a delivery is outstanding does nothing."""
    transport = ScriptedTransport("hang")
    d = make(transport)
    submit(d, "a")
    await asyncio.sleep(0)
    submit(d, "b", "c")
    d.send()
    await asyncio.sleep(0.01)
    assert transport.sent == ["a"]
    assert d.state == DispatcherState.SENDING
    assert d.memory.in_flight == ("a",)
    assert d.memory.pending == ("b", "c")
    d.close()
    d._task.cancel()


@pytest.mark.asyncio
async def test_nothing_to_send_stays_idle():
    """send() with empty queues does not call the transport."""
    transport = ScriptedTransport()
    d = make(transport)
    d.send()
    await asyncio.sleep(0.01)
    assert transport.sent == []
    assert d.state == DispatcherState.IDLE


@pytest.mark.asyncio
async def test_text_batch_and_headers():
    """Text batches are newline-joined; token adds a bearer header."""
    transport = ScriptedTransport("gate")
    d = make(transport, token="tok")
    d.receiver.push("one")
    d.receiver.push("two")
    d.send()
    transport.release.set()
    await wait_until(lambda: not d.has_backlog())
    assert transport.sent == ["one\ntwo"]
    assert transport.headers[0] == {
        "Content-Type": "text/plain",
        "Authorization": "Bearer tok",
    }
    d.close()


@pytest.mark.asyncio
async def test_json_batch_envelope():
    """JSON batches wrap pre-serialized entries in {"messages": [...]}."""
    transport = ScriptedTransport()
    d = make(transport, json=True)
    d.receiver.push('{"message":"a"}')
    d.receiver.push('{"message":"b"}')
    d.send()
    await wait_until(lambda: not d.has_backlog())
    assert json.loads(transport.sent[0]) == {"messages": [{"message": "a"}, {"message": "b"}]}
    assert transport.headers[0] == {"Content-Type": "application/json"}
    d.close()


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failure_backs_off_and_suspends():
    """A failed attempt grows the interval and pauses for the previous one."""
    transport = ScriptedTransport(500)
    d = make(transport, interval=1.0)
    submit(d, "a")
    await wait_until(lambda: not d.is_sending)
    assert d.interval == 2.0
    assert d.state == DispatcherState.SUSPENDED
    submit(d, "b")
    await asyncio.sleep(0.01)
    assert len(transport.sent) == 1
    d.close()


@pytest.mark.asyncio
async def test_success_resets_interval_to_base():
    """After a success the interval is back to its base (8.0 -> 1.0)."""
    transport = ScriptedTransport()
    d = make(transport, interval=1.0)
    d.interval = 8.0
    submit(d, "a")
    await wait_until(lambda: not d.is_sending)
    assert d.interval == 1.0
    # Even after success the base interval is waited out.
    assert d.state == DispatcherState.SUSPENDED
    d.close()


@pytest.mark.asyncio
async def test_retries_until_delivered():
    """Failed batches are retried after the pause and eventually delivered."""
    transport = ScriptedTransport(503, ConnectionError("refused"), 200)
    d = make(transport, interval=0.01, persist="never")
    submit(d, "a", "b")
    await wait_until(lambda: not d.has_backlog())
    assert transport.sent[-1] == "a\nb"
    assert len(transport.sent) == 3
    assert d.interval == 0.01
    d.close()


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    """A transport call exceeding the timeout is abandoned and retried later."""
    transport = ScriptedTransport("hang")
    d = make(transport, timeout=0.05, interval=10, persist="never")
    submit(d, "a")
    await wait_until(lambda: not d.is_sending)
    assert d.memory.pending == ("a",)
    assert d.memory.in_flight_size() == 0
    assert d.interval == 20
    d.close()


# ---------------------------------------------------------------------------
# Promotion / demotion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failure_promotes_backlog_to_durable():
    """With persist=default, a failure moves volatile entries into durable storage."""
    transport = ScriptedTransport(500)
    d = make(transport, interval=10)
    assert d.receiver is d.memory
    submit(d, "1", "2", "3")
    await wait_until(lambda: not d.is_sending)
    assert d.storage.pending == ("1", "2", "3")
    assert d.memory.size() == 0
    assert d.receiver is d.storage
    d.close()


@pytest.mark.asyncio
async def test_promotion_puts_migrated_entries_first():
    """Migrated volatile entries go ahead of what durable storage already held."""
    kv = MemoryKV()
    transport = ScriptedTransport(500)
    d = make(transport, kv=kv, interval=10)
    d.memory.push("m1")
    d.memory.push("m2")
    d.storage.push("old")
    d.send()
    await wait_until(lambda: not d.is_sending)
    # "old" was the failed batch (durable is preferred as sender).
    assert transport.sent == ["old"]
    assert d.storage.pending == ("m1", "m2", "old")
    d.close()


@pytest.mark.asyncio
async def test_success_demotes_receiver_to_memory():
    """Once delivery works again new entries go to memory."""
    transport = ScriptedTransport(500)
    d = make(transport, interval=0.01)
    submit(d, "a")
    await wait_until(lambda: not d.has_backlog())
    assert d.receiver is d.memory
    assert transport.sent == ["a", "a"]
    d.close()


@pytest.mark.asyncio
async def test_durable_backlog_sent_before_memory():
    """The durable queue is drained first."""
    kv = MemoryKV()
    DurableQueue(kv, 50).push("recovered")
    transport = ScriptedTransport()
    d = make(transport, kv=kv)
    submit(d, "new")
    await wait_until(lambda: not d.has_backlog())
    assert transport.sent == ["recovered", "new"]
    d.close()


@pytest.mark.asyncio
async def test_persist_never_stays_in_memory():
    """persist=never has no durable queue; failures keep entries in memory."""
    transport = ScriptedTransport(500)
    d = make(transport, persist="never", interval=10)
    assert d.storage is None
    submit(d, "a")
    await wait_until(lambda: not d.is_sending)
    assert d.receiver is d.memory
    assert d.memory.pending == ("a",)
    d.close()


@pytest.mark.asyncio
async def test_persist_always_keeps_durable_receiver():
    """persist=always receives into durable storage even after success."""
    transport = ScriptedTransport()
    d = make(transport, persist="always")
    assert d.receiver is d.storage
    submit(d, "a")
    await wait_until(lambda: not d.has_backlog())
    assert d.receiver is d.storage
    assert transport.sent == ["a"]
    d.close()


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_close_ignores_outstanding_delivery():
    """A delivery that completes after close() does not touch the queues."""
    transport = ScriptedTransport("gate")
    d = make(transport, persist="never")
    submit(d, "a")
    await asyncio.sleep(0)
    d.close()
    transport.release.set()
    await asyncio.sleep(0.02)
    assert d.memory.in_flight == ("a",)
    submit(d, "b")
    await asyncio.sleep(0.01)
    assert transport.sent == ["a"]


@pytest.mark.asyncio
async def test_close_cancels_backoff_timer():
    """No retry happens after close(), even once the pause would have elapsed."""
    transport = ScriptedTransport(500)
    d = make(transport, interval=0.02, persist="never")
    submit(d, "a")
    await wait_until(lambda: d.state == DispatcherState.SUSPENDED)
    d.close()
    assert d._timer is None
    await asyncio.sleep(0.05)
    assert transport.sent == ["a"]
