"""Standalone reminder worker: ``boardroom-reminders`` or ``python -m boardroom.worker``."""

from __future__ import annotations

import asyncio
import signal

from aws_lambda_powertools import Logger

from boardroom.config import get_settings
from boardroom.reminders import build_reminder_scheduler

logger = Logger()


async def run() -> None:
    scheduler = build_reminder_scheduler(get_settings())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    try:
        await stop.wait()
    finally:
        scheduler.stop()
        logger.info("Reminder worker exiting")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
