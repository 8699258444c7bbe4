"""Worker module for the relay service.

Contains the queue consumers and the email delivery state machine.

Version: 2.0.0
"""

from relay_service.worker.email_processor import EmailDeliveryProcessor, is_hard_bounce
from relay_service.worker.runner import WorkerService, wait_for_job

__all__ = ["WorkerService", "EmailDeliveryProcessor", "is_hard_bounce", "wait_for_job"]
