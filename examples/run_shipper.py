"""
Minimal logrelay shipper script.

Usage:
    python examples/run_shipper.py [--url URL] [--token TOKEN] [--state-dir DIR]
                                   [--json] [--count N]

Options:
    --url URL        Collector endpoint; http(s):// posts, ws(s):// streams
                     (default: http://localhost/logger)
    --token TOKEN    Bearer token sent with every batch
    --state-dir DIR  Keep undelivered entries here across restarts
    --json           Ship JSON records instead of plain text lines
    --count N        Number of demo log lines to emit (default: 10)
"""

import argparse
import asyncio
import logging

from logrelay.backends.file import FileKV
from logrelay.config import Options
from logrelay.pipeline import Pipeline
from logrelay.transport import HttpTransport, WebSocketTransport

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def main() -> None:
    parser = argparse.ArgumentParser(description="logrelay demo shipper")
    parser.add_argument("--url", default="http://localhost/logger")
    parser.add_argument("--token", default="")
    parser.add_argument("--state-dir", default=None, help="Durable queue directory")
    parser.add_argument("--json", action="store_true", help="Ship JSON records")
    parser.add_argument("--count", type=int, default=10)
    args = parser.parse_args()

    options = Options(url=args.url, token=args.token, json=args.json, timeout=5.0)
    if args.url.startswith(("ws://", "wss://")):
        transport = WebSocketTransport(args.url)
    else:
        transport = HttpTransport(args.url)
    kv = FileKV(args.state_dir) if args.state_dir else None

    pipeline = Pipeline(options, transport=transport, kv=kv)
    app = logging.getLogger("demo")
    async with pipeline.attached(app, flush_timeout=10.0):
        for i in range(args.count):
            app.info("demo line %d of %d", i + 1, args.count)
            await asyncio.sleep(0.1)
        app.warning("demo finished")

    logger.info("shipper stopped")


if __name__ == "__main__":
    asyncio.run(main())
