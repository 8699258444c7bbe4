"""Worker entry point.

Runs the delivery worker via: python -m relay_service.worker
"""

from __future__ import annotations

import asyncio
import signal
import sys

from relay_service.config import RelayConfig
from relay_service.core.exceptions import RelayServiceError
from relay_service.core.logger import get_logger, setup_logging
from relay_service.worker.runner import WorkerService

logger = get_logger(__name__)


async def main() -> None:
    """Build the worker service and run it until SIGTERM/SIGINT."""
    config = RelayConfig()
    setup_logging(
        log_level=config.LOG_LEVEL,
        file_level="DEBUG",
        console_level=config.LOG_LEVEL,
        enable_file=config.LOG_TO_FILE,
        settings=config,
    )

    try:
        service = WorkerService.from_config(config)
        if not await asyncio.to_thread(service.transport.verify):
            raise RelayServiceError(
                "Outbound transport verification failed. Check SMTP_OUT_* settings."
            )
    except RelayServiceError as e:
        logger.error(f"Worker initialization failed: {e}")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, service.request_stop, signum)

    async with service:
        await service.wait_stopped()


def run() -> None:
    """Console script entry point (``relay-worker``)."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    run()
