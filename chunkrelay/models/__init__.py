"""Shared typed data models for chunkrelay.

This package contains dataclasses used across engine modules to avoid
cross-module coupling and circular imports.
"""

from .datatypes import (
    ChatMessage,
    ChunkJob,
    GenerationParams,
    JobOutcome,
    ParamSetting,
    ProgressState,
    PromptSetting,
    ReasoningState,
    RequestOutcome,
    StreamItem,
    StreamItemKind,
    TerminationState,
)

__all__ = [
    "ChatMessage",
    "ChunkJob",
    "GenerationParams",
    "JobOutcome",
    "ParamSetting",
    "ProgressState",
    "PromptSetting",
    "ReasoningState",
    "RequestOutcome",
    "StreamItem",
    "StreamItemKind",
    "TerminationState",
]
