"""
logging integration: a Handler that forwards records into a Pipeline.
"""

import logging
import traceback
from typing import TYPE_CHECKING

from logrelay.dispatcher import delivering

if TYPE_CHECKING:
    from logrelay.pipeline import Pipeline

# Records from these loggers are never shipped: the pipeline logs through
# logrelay, and the transports log through the others on every delivery.
_IGNORED_LOGGERS = ("logrelay", "httpx", "httpcore", "websockets")


def _is_ignored(name: str) -> bool:
    return any(name == n or name.startswith(n + ".") for n in _IGNORED_LOGGERS)


class RemoteHandler(logging.Handler):
    """
    Ship every record it receives through the pipeline.

    The message is record.getMessage(); a record carrying exc_info or
    stack_info ships that as its stack trace. Level filtering is left to
    the logger and to this handler's level.
    """

    def __init__(self, pipeline: "Pipeline", level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.pipeline = pipeline

    def emit(self, record: logging.LogRecord) -> None:
        if delivering.get() or _is_ignored(record.name):
            return
        try:
            stacktrace = None
            if record.exc_info and record.exc_info[1] is not None:
                stacktrace = "".join(traceback.format_exception(*record.exc_info)).rstrip("\n")
            elif record.stack_info:
                stacktrace = record.stack_info
            self.pipeline.submit(
                [record.getMessage()],
                record.levelname.lower(),
                record.name,
                stacktrace=stacktrace,
            )
        except Exception:  # pylint: disable=broad-exception-caught
            self.handleError(record)
