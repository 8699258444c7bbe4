"""Queue statistics model.

Defines Pydantic model for per-queue job counts reported by the status
endpoint and the worker.

Version: 1.0.0
"""

from pydantic import BaseModel, Field


class QueueStats(BaseModel):
    """Job queue statistics model.

    Attributes:
        queue_name: Queue the counts belong to (None for all queues).
        waiting_count: Jobs ready to be leased.
        active_count: Jobs currently leased by a worker.
        delayed_count: Jobs waiting for their backoff to elapse.
        completed_count: Acknowledged jobs.
        failed_count: Jobs that failed terminally.
        success_rate: Percentage of completed jobs among finished ones.
    """

    queue_name: str | None = Field(default=None, description="Queue name")
    waiting_count: int = Field(default=0, ge=0, description="Ready to lease")
    active_count: int = Field(default=0, ge=0, description="Currently leased")
    delayed_count: int = Field(default=0, ge=0, description="Waiting on backoff")
    completed_count: int = Field(default=0, ge=0, description="Acknowledged")
    failed_count: int = Field(default=0, ge=0, description="Failed terminally")
    success_rate: float = Field(
        default=0.0, ge=0.0, le=100.0, description="Success rate (%)"
    )

    @property
    def total_jobs(self) -> int:
        return (
            self.waiting_count
            + self.active_count
            + self.delayed_count
            + self.completed_count
            + self.failed_count
        )

    def calculate_success_rate(self) -> None:
        """Calculate and update success rate.

        Computes success rate as percentage of completed jobs out of
        total finished (completed + failed).
        """
        total_finished = self.completed_count + self.failed_count
        if total_finished > 0:
            self.success_rate = (self.completed_count / total_finished) * 100
        else:
            self.success_rate = 0.0
