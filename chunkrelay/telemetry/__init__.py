"""Runtime logging for chunkrelay jobs."""

from .logger import RunLogger

__all__ = ["RunLogger"]
