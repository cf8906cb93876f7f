from __future__ import annotations

import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from .config import BridgeSettings
from .errors import ArmHubError
from .runtime.logging import configure_logging
from .service import BridgeService

logger = logging.getLogger("armhub")


async def main() -> int:
    try:
        settings = BridgeSettings.from_env()
    except ValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    configure_logging(settings.robot.log_level)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    service = BridgeService(settings)
    try:
        await service.run(stop_event)
    except ArmHubError as exc:
        logger.error("bridge.failed", extra={"error": str(exc)})
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
