"""
logrelay - ship application logs to a remote collector, reliably
"""

__version__ = "0.1.0"

from logrelay.backends.file import FileKV
from logrelay.backends.memory import MemoryKV
from logrelay.config import ExponentialBackoff, Options
from logrelay.dispatcher import Dispatcher
from logrelay.handler import RemoteHandler
from logrelay.pipeline import Pipeline
from logrelay.transport import HttpTransport, WebSocketTransport
from logrelay.types import (
    ConfigurationError,
    LogRelayError,
    PersistMode,
    StorageQuotaExceeded,
)

__all__ = [
    "ConfigurationError",
    "Dispatcher",
    "ExponentialBackoff",
    "FileKV",
    "HttpTransport",
    "LogRelayError",
    "MemoryKV",
    "Options",
    "PersistMode",
    "Pipeline",
    "RemoteHandler",
    "StorageQuotaExceeded",
    "WebSocketTransport",
    "__version__",
]
