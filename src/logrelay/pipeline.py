"""
Pipeline: the entry point applications use to ship logs.

Usage:
    pipeline = Pipeline(Options(url="https://logs.example.com/ingest", json=True),
                        kv=FileKV("/var/lib/myapp/logrelay"))
    pipeline.attach(logging.getLogger())
    logging.getLogger("app").warning("disk at %d%%", 93)
    ...
    await pipeline.flush(timeout=5.0)
    pipeline.detach()
    await pipeline.aclose()

attach() must run on (or be given) the event loop that will own the
pipeline. submit() may be called from any thread; entries submitted off the
loop thread are handed over with call_soon_threadsafe.
"""

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Optional, Sequence

from logrelay.config import Options
from logrelay.dispatcher import Dispatcher
from logrelay.formatting import build_record, capture_stack, format_args, render_entry
from logrelay.handler import RemoteHandler
from logrelay.memory import VolatileQueue
from logrelay.storage import DurableQueue
from logrelay.storage_backend import DurableKV
from logrelay.transport import HttpTransport, Transport
from logrelay.types import ConfigurationError, Entry, PersistMode

logger = logging.getLogger(__name__)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Pipeline:
    """
    Formats entries, queues them and keeps a Dispatcher delivering them.

    One Pipeline attaches to at most one logging.Logger at a time. Several
    independent pipelines may coexist; give each its own kv (or key_prefix)
    since a durable store must have a single owner.
    """

    def __init__(
        self,
        options: Optional[Options] = None,
        *,
        transport: Optional[Transport] = None,
        kv: Optional[DurableKV] = None,
    ) -> None:
        self._requested = options or Options()
        self._transport = transport or HttpTransport(self._requested.url)
        self._kv = kv
        self._options: Optional[Options] = None
        self._dispatcher: Optional[Dispatcher] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._logger: Optional[logging.Logger] = None
        self._handler: Optional[RemoteHandler] = None

    @property
    def options(self) -> Options:
        """Effective options: after capacity defaults and any storage downgrade."""
        return self._options or self._requested.resolved()

    @property
    def dispatcher(self) -> Optional[Dispatcher]:
        return self._dispatcher

    @property
    def transport(self) -> Transport:
        return self._transport

    def is_attached(self) -> bool:
        return self._dispatcher is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(
        self,
        target: logging.Logger,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> logging.Logger:
        """Install the handler on target and start delivering."""
        if self._dispatcher is not None:
            raise ConfigurationError("Pipeline is already attached")
        if not isinstance(target, logging.Logger):
            raise ConfigurationError(
                f"cannot attach to {type(target).__name__}, need a logging.Logger"
            )
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError as e:
                raise ConfigurationError("attach() needs a running event loop or loop=") from e

        options = self._requested.resolved()
        storage = None
        if options.persist != PersistMode.NEVER:
            storage = DurableQueue(self._kv, options.capacity, key_prefix=options.key_prefix)
            if not storage.available:
                logger.warning(
                    "Pipeline: durable storage unavailable, keeping up to %d entries in memory only",
                    options.degraded().capacity,
                )
                options = options.degraded()
                storage = None
        memory = VolatileQueue(
            options.capacity,
            evict_on_overflow=options.persist == PersistMode.NEVER,
        )

        self._options = options
        self._loop = loop
        self._dispatcher = Dispatcher(memory, storage, self._transport, options, loop=loop)
        self._handler = RemoteHandler(self)
        self._logger = target
        target.addHandler(self._handler)
        logger.info(
            "Pipeline: attached to logger %r (persist=%s, capacity=%d)",
            target.name,
            options.persist,
            options.capacity,
        )
        # Deliver anything recovered from a previous run.
        self._dispatcher.send()
        return target

    def detach(self) -> None:
        """Remove the handler and stop delivering."""
        if self._dispatcher is None:
            raise ConfigurationError("Pipeline is not attached")
        if self._handler not in self._logger.handlers:
            raise ConfigurationError(
                "Pipeline handler was removed from the logger by someone else; cannot detach"
            )
        self._logger.removeHandler(self._handler)
        self._dispatcher.close()
        logger.info("Pipeline: detached from logger %r", self._logger.name)
        self._dispatcher = None
        self._handler = None
        self._logger = None
        self._loop = None

    async def aclose(self) -> None:
        """Detach if attached and release the transport."""
        if self._dispatcher is not None:
            self.detach()
        await self._transport.close()

    @contextlib.asynccontextmanager
    async def attached(
        self,
        target: logging.Logger,
        *,
        flush_timeout: Optional[float] = None,
    ) -> AsyncIterator["Pipeline"]:
        """
        Attach for the duration of an async with block.

        With flush_timeout, waits up to that long for the backlog to drain
        before detaching.
        """
        self.attach(target)
        try:
            yield self
        finally:
            if flush_timeout is not None:
                await self.flush(flush_timeout)
            await self.aclose()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _render(
        self,
        args: Sequence[Any],
        level: str,
        logger_name: str,
        stacktrace: Optional[str],
    ) -> Entry:
        options = self._options
        level = level.lower()
        if stacktrace is None and level in options.trace:
            stacktrace = capture_stack(options.depth)
        record = build_record(
            format_args(args),
            level,
            logger_name,
            timestamp=options.timestamp,
            stacktrace=stacktrace,
        )
        return render_entry(record, options.json)

    def submit(
        self,
        args: Sequence[Any],
        level: str,
        logger_name: str = "",
        *,
        stacktrace: Optional[str] = None,
    ) -> None:
        """
        Queue one log event and kick the dispatcher. Never raises; does
        nothing while detached.
        """
        # detach() may run on the loop thread meanwhile; it clears the
        # dispatcher first, so a torn read leaves loop None, never dispatcher.
        dispatcher, loop = self._dispatcher, self._loop
        if dispatcher is None or loop is None:
            return
        try:
            entry = self._render(args, level, logger_name, stacktrace)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Pipeline: dropping entry that could not be formatted: %s", e)
            return

        if _running_loop() is loop:
            self._enqueue(dispatcher, entry)
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, dispatcher, entry)
        except RuntimeError as e:
            logger.warning("Pipeline: event loop unavailable, dropping entry: %s", e)

    @staticmethod
    def _enqueue(dispatcher: Dispatcher, entry: Entry) -> None:
        if dispatcher.closed:
            return
        dispatcher.receiver.push(entry)
        dispatcher.send()

    async def flush(self, timeout: Optional[float] = None, *, poll: float = 0.01) -> bool:
        """
        Wait until nothing is pending or in flight. Returns False if the
        timeout elapsed first (e.g. the collector is down).
        """
        dispatcher = self._dispatcher
        if dispatcher is None:
            return True
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while dispatcher.has_backlog() and not dispatcher.closed:
            if deadline is not None and loop.time() >= deadline:
                return False
            dispatcher.send()
            await asyncio.sleep(poll)
        return not dispatcher.has_backlog()
