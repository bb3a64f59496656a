#!/usr/bin/env python3
"""
Queue Worker

Long-running polling loop over the async_tasks table. Run one or more of
these next to the web app:

    python scripts/queue_worker.py                  # poll forever
    python scripts/queue_worker.py --once           # process at most one task
    python scripts/queue_worker.py --drain 50       # process up to 50 tasks and exit

SIGINT / SIGTERM finish the current task and exit cleanly.
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path

# allow running from any directory
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.config import get_settings  # noqa: E402
from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.domain.jobs import build_job_registry  # noqa: E402
from app.workers.queue_worker import QueueWorker  # noqa: E402
from app.workers.runtime import build_runtime  # noqa: E402

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the async task queue worker")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="process at most one task and exit")
    mode.add_argument("--drain", type=int, metavar="N", help="process up to N tasks and exit")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="seconds to sleep when the queue is empty (default: QUEUE_POLL_INTERVAL_SECONDS)",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    poll_interval = args.poll_interval or settings.QUEUE_POLL_INTERVAL_SECONDS

    async with build_runtime(settings) as runtime:
        worker = QueueWorker(
            runtime.queue,
            build_job_registry(),
            runtime.jobs,
            poll_interval_seconds=poll_interval,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, worker.stop)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises
                pass

        if args.once:
            await worker.run_once()
        elif args.drain:
            handled = await worker.drain(args.drain)
            print(f"Processed {handled} task(s)")
        else:
            await worker.run_forever()

    return 0


def main() -> int:
    args = parse_args()
    settings = get_settings()
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME,
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
