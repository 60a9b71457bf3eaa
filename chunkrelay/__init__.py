"""Top-level package for chunkrelay.

This package drives long texts through remote LLM endpoints in bounded,
resumable, order-preserving chunks. The main entry point is
`BatchJob.execute`.
"""

__version__ = "0.3.0"

from .engine.job import BatchJob, JobContext  # noqa: E402

__all__ = ["BatchJob", "JobContext", "__version__"]
