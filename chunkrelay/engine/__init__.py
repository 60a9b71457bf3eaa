"""Job orchestration: scheduling, ordered assembly, progress, and cancellation."""

from .cancellation import CancellationController
from .job import BatchJob, CancellableJob, JobContext, install_interrupt_handler
from .progress import ProgressStore

__all__ = [
    "BatchJob",
    "CancellableJob",
    "CancellationController",
    "JobContext",
    "ProgressStore",
    "install_interrupt_handler",
]
