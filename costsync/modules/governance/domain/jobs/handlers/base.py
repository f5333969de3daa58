"""
Base Job Handler
"""
from abc import ABC, abstractmethod
from typing import Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from costsync.models.background_job import BackgroundJob


class BaseJobHandler(ABC):
    """
    Abstract base class for background job handlers.

    Retries, backoff and dead-lettering are owned by the JobProcessor;
    handlers only do the work and raise on failure.
    """

    # Hard limit enforced by the processor via asyncio.wait_for
    timeout_seconds: int = 300

    @abstractmethod
    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        """
        Execute the job logic.

        Args:
            job: The BackgroundJob model instance
            db: Database session

        Returns:
            Result dictionary stored on the job row
        """

    async def on_dead_letter(self, job: BackgroundJob, db: AsyncSession) -> None:
        """Called once after the job has used up its attempts."""
        return None
