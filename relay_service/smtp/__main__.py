"""SMTP relay entry point.

Runs the inbound relay via: python -m relay_service.smtp
"""

from __future__ import annotations

import signal
import sys
import threading
from typing import Any

from relay_service.config import RelayConfig
from relay_service.core.exceptions import RelayServiceError
from relay_service.core.logger import get_logger, setup_logging
from relay_service.database.connection import Database
from relay_service.database.projects import ProjectStore
from relay_service.services.auth import ApiKeyAuthenticator
from relay_service.services.send import SendService
from relay_service.smtp.relay import SMTPRelayServer

logger = get_logger(__name__)


def main() -> None:
    """Start the relay and block until SIGTERM/SIGINT."""
    config = RelayConfig()
    setup_logging(
        log_level=config.LOG_LEVEL,
        file_level="DEBUG",
        console_level=config.LOG_LEVEL,
        enable_file=config.LOG_TO_FILE,
        settings=config,
    )

    try:
        db = Database(config)
        server = SMTPRelayServer(
            config,
            SendService.from_database(db, config),
            ApiKeyAuthenticator(ProjectStore(db)),
        )
        server.start()
    except (RelayServiceError, OSError) as e:
        logger.error(f"Failed to start SMTP relay: {e}")
        sys.exit(1)

    stopping = threading.Event()

    def _handle_shutdown(signum: int, frame: Any) -> None:
        logger.info(f"Received shutdown signal ({signum}). Stopping gracefully...")
        stopping.set()

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    stopping.wait()
    server.stop()
    db.close()


if __name__ == "__main__":
    main()
