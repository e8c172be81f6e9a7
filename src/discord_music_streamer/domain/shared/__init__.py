"""
Shared Domain Kernel

Contains types, events and exceptions shared across all bounded contexts.
"""

from discord_music_streamer.domain.shared.exceptions import (
    BusinessRuleViolationError,
    DomainError,
    InvalidOperationError,
    PipelineError,
    ProviderError,
    ResolutionError,
    SyncError,
    ValidationError,
)

__all__ = [
    "DomainError",
    "ValidationError",
    "BusinessRuleViolationError",
    "InvalidOperationError",
    "ResolutionError",
    "ProviderError",
    "PipelineError",
    "SyncError",
]
