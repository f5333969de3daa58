from .domain.jobs.processor import JobProcessor, enqueue_job

__all__ = ["JobProcessor", "enqueue_job"]
