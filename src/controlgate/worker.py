"""Headless scheduler process: dispatch lanes, notifications and leader duties, no HTTP."""

import argparse
import asyncio
import logging
import signal

from controlgate.config import settings
from controlgate.db.base import close_db, init_db
from controlgate.instance import resolve_instance_id
from controlgate.tasks import Scheduler
from controlgate.transport import OpenClawTransport

logger = logging.getLogger("controlgate.worker")


async def run(once: bool = False) -> None:
    settings.instance_id = resolve_instance_id(settings.instance_id, settings.env.value)
    await init_db()
    scheduler = Scheduler(OpenClawTransport(), runner_id=settings.instance_id)

    try:
        if once:
            await scheduler.tick()
            await scheduler.drain(timeout=settings.transport_timeout_seconds)
            if scheduler.is_leader:
                await scheduler.release_lease()
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await scheduler.start()
        logger.info(f"Worker {settings.instance_id} running; Ctrl+C to stop")
        await stop.wait()
        await scheduler.stop()
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="ControlGate scheduler worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scheduler tick, wait for its work and exit",
    )
    parser.add_argument(
        "--instance-id",
        default=None,
        help="Runner id stamped on claims (default: auto-detect)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between scheduler ticks",
    )
    args = parser.parse_args()

    if args.instance_id:
        settings.instance_id = args.instance_id
    if args.poll_interval:
        settings.poll_interval_seconds = args.poll_interval

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run(once=args.once))


if __name__ == "__main__":
    main()
