"""
Dispatcher: the send loop that moves batches from the queues to the transport.

States:
- IDLE: nothing in flight, no pause pending; send() may start a delivery.
- SENDING: one transport call outstanding.
- SUSPENDED: waiting out the pause before the next send().

One cycle:
  send() picks a sender (durable if it has pending entries, else volatile),
  forms a batch, renders it and starts a transport task. On success the batch
  is confirmed, the interval resets to its base and the receiver reverts to
  the volatile queue (unless persist="always"). On failure or timeout the
  batch goes back to the front of its queue, the interval backs off and,
  unless persist="never", the whole volatile backlog moves to the front of
  the durable queue, which becomes the receiver. Either way the next cycle
  runs after a pause of the interval in effect when the attempt finished.

All state is owned by one asyncio event loop; send() is synchronous, cheap
and safe to call at any time.
"""

import asyncio
import contextvars
import logging
from enum import StrEnum
from typing import Dict, Optional, Union

from logrelay.config import Options
from logrelay.memory import VolatileQueue
from logrelay.storage import DurableQueue
from logrelay.transport import Transport, is_accepted
from logrelay.types import Outcome, PersistMode, content_type, render_batch

logger = logging.getLogger(__name__)

# True inside a delivery task; records logged there (by the transport or its
# HTTP/WebSocket library) must not be shipped again.
delivering: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "logrelay_delivering", default=False
)

Queue = Union[VolatileQueue, DurableQueue]


class DispatcherState(StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    SUSPENDED = "suspended"


# pylint: disable=too-many-instance-attributes
class Dispatcher:
    """
    Drives delivery for one volatile queue and an optional durable queue.

    storage may be None (or unavailable) only with persist="never".
    """

    def __init__(
        self,
        memory: VolatileQueue,
        storage: Optional[DurableQueue],
        transport: Transport,
        options: Options,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.options = options
        self._memory = memory
        self._storage = storage if storage is not None and storage.available else None
        self._transport = transport
        self._loop = loop or asyncio.get_running_loop()
        self._headers: Dict[str, str] = {"Content-Type": content_type(options.json)}
        if options.token:
            self._headers["Authorization"] = options.authorization

        self.interval = options.interval
        self.is_sending = False
        self.is_suspended = False
        if options.persist == PersistMode.ALWAYS and self._storage is not None:
            self.receiver: Queue = self._storage
        else:
            self.receiver = self._memory
        self.sender: Queue = self.receiver

        self._content = ""
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        # Bumped by close(); a delivery started under an older generation is ignored.
        self._generation = 0
        self._closed = False

    @property
    def memory(self) -> VolatileQueue:
        return self._memory

    @property
    def storage(self) -> Optional[DurableQueue]:
        return self._storage

    @property
    def state(self) -> DispatcherState:
        if self.is_sending:
            return DispatcherState.SENDING
        if self.is_suspended:
            return DispatcherState.SUSPENDED
        return DispatcherState.IDLE

    @property
    def closed(self) -> bool:
        return self._closed

    def has_backlog(self) -> bool:
        """True while any entry is pending or in flight."""
        queues = [self._memory] if self._storage is None else [self._memory, self._storage]
        return self.is_sending or any(q.size() or q.in_flight_size() for q in queues)

    # ------------------------------------------------------------------
    # Send loop
    # ------------------------------------------------------------------

    def send(self) -> None:
        """Start a delivery if idle and there is something to deliver."""
        if self._closed or self.is_suspended or self.is_sending:
            return

        if not self.sender.in_flight_size():
            if self._storage is not None and self._storage.size():
                self.sender = self._storage
            elif self._memory.size():
                self.sender = self._memory
            else:
                return
            batch = self.sender.form_batch()
            self._content = render_batch(batch, self.options.json)
            logger.debug(
                "Dispatcher: sending %d entries from %s",
                len(batch),
                type(self.sender).__name__,
            )

        self.is_sending = True
        self._task = self._loop.create_task(self._deliver(self._content, self._generation))

    async def _deliver(self, content: str, generation: int) -> None:
        delivering.set(True)
        timeout = self.options.timeout or None
        outcome = Outcome.FAILURE
        try:
            call = self._transport.send(content, timeout=timeout, headers=self._headers)
            if timeout:
                status = await asyncio.wait_for(call, timeout)
            else:
                status = await call
            if is_accepted(status):
                outcome = Outcome.SUCCESS
            else:
                logger.warning("Dispatcher: collector rejected batch with status %s", status)
        except asyncio.TimeoutError:
            outcome = Outcome.TIMEOUT
            logger.warning("Dispatcher: delivery timed out after %.1fs", timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Dispatcher: delivery failed: %s", e)

        if generation != self._generation:
            logger.debug("Dispatcher: ignoring %s outcome after close", outcome)
            return
        self._complete(outcome)

    def _complete(self, outcome: Outcome) -> None:
        self.is_sending = False
        self._task = None

        if outcome == Outcome.SUCCESS:
            self.interval = self.options.interval
            self.sender.confirm()
            if self.options.persist != PersistMode.ALWAYS:
                self.receiver = self._memory
            pause = self.interval
        else:
            pause = self.interval
            self.interval = self.options.backoff(self.interval)
            self.sender.fail()
            if (
                self.options.persist != PersistMode.NEVER
                and self._storage is not None
                and self.receiver is not self._storage
            ):
                self._promote()

        if pause > 0:
            self._suspend(pause)
        else:
            self.send()

    def _promote(self) -> None:
        """Move the volatile backlog to the front of the durable queue."""
        entries = self._memory.drain()
        self._storage.unshift(entries)
        self.receiver = self._storage
        logger.info(
            "Dispatcher: delivery failing, moved %d entries to durable storage",
            len(entries),
        )

    def _suspend(self, pause: float) -> None:
        self.is_suspended = True
        self._timer = self._loop.call_later(pause, self._resume)

    def _resume(self) -> None:
        self._timer = None
        self.is_suspended = False
        self.send()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop scheduling sends; an outstanding delivery finishes but is ignored."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.is_suspended = False
