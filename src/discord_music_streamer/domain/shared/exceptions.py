"""Base exception classes for domain-level errors.

The hierarchy mirrors the stages of a playback request:

- ``ResolutionError``: a query could not be turned into a Track.
- ``ProviderError``: a source provider could not prepare a pipeline.
- ``PipelineError``: the subprocess pipeline failed to start or crashed.
- ``SyncError``: the control panel could not be pushed to the chat platform.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base exception for all domain-level errors."""

    hint: str | None = None

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__


class ValidationError(DomainError):
    """Raised when domain validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR")
        self.field = field


class BusinessRuleViolationError(DomainError):
    """Raised when a business rule is violated."""

    def __init__(self, rule: str, message: str | None = None) -> None:
        msg = message or f"Business rule violated: {rule}"
        super().__init__(msg, code="BUSINESS_RULE_VIOLATION")
        self.rule = rule


class InvalidOperationError(DomainError):
    """Raised when an operation is invalid in the current state."""

    def __init__(self, operation: str, current_state: str, message: str | None = None) -> None:
        msg = message or f"Cannot perform '{operation}' in state '{current_state}'"
        super().__init__(msg, code="INVALID_OPERATION")
        self.operation = operation
        self.current_state = current_state


# === Resolution ===


class ResolutionError(DomainError):
    """Raised when a user query cannot be resolved into a Track."""


class TrackNotFoundError(ResolutionError):
    def __init__(self, query: str, message: str | None = None) -> None:
        super().__init__(message or f"No results for '{query}'", code="TRACK_NOT_FOUND")
        self.query = query


class UnsupportedSourceError(ResolutionError):
    def __init__(self, query: str, message: str | None = None) -> None:
        super().__init__(message or f"Unsupported source: '{query}'", code="UNSUPPORTED_SOURCE")
        self.query = query


class MetadataTimeoutError(ResolutionError):
    def __init__(self, query: str, timeout: float) -> None:
        super().__init__(
            f"Metadata lookup for '{query}' timed out after {timeout:g}s",
            code="METADATA_TIMEOUT",
        )
        self.query = query
        self.timeout = timeout


# === Providers ===


class ProviderError(DomainError):
    """Raised when a source provider cannot build a pipeline."""

    hint = "Try again with the fallback option enabled."


class DeviceNotFoundError(ProviderError):
    def __init__(self, device_name: str, waited_seconds: float) -> None:
        super().__init__(
            f"Streaming device '{device_name}' did not appear within {waited_seconds:g}s",
            code="DEVICE_NOT_FOUND",
        )
        self.device_name = device_name
        self.waited_seconds = waited_seconds


class AuthExpiredError(ProviderError):
    hint = "Re-authenticate the streaming account and update the refresh token."

    def __init__(self, message: str = "Streaming service credentials are no longer valid") -> None:
        super().__init__(message, code="AUTH_EXPIRED")


class PremiumRequiredError(ProviderError):
    hint = "Playback through the streaming service needs a premium account."

    def __init__(self, message: str = "Streaming service requires a premium account") -> None:
        super().__init__(message, code="PREMIUM_REQUIRED")


class ProviderUnavailableError(ProviderError):
    hint = "The streaming service is unavailable or not configured on this bot."

    def __init__(self, provider: str, message: str | None = None) -> None:
        super().__init__(message or f"Provider '{provider}' is unavailable", code="PROVIDER_UNAVAILABLE")
        self.provider = provider


class FallbackFailedError(ProviderError):
    """Raised when both the requested provider and its substitute failed."""

    hint = "The service is unavailable right now."

    def __init__(self, primary: DomainError, fallback: BaseException) -> None:
        super().__init__(
            f"{primary.message}; fallback also failed: {fallback}",
            code="FALLBACK_FAILED",
        )
        self.primary = primary
        self.fallback = fallback


# === Pipelines ===


class PipelineError(DomainError):
    """Raised when a subprocess pipeline cannot run to completion."""

    hint = "The service is unavailable right now."

    def __init__(self, message: str, code: str | None = None, diagnostics: str = "") -> None:
        super().__init__(message, code=code)
        self.diagnostics = diagnostics


class SpawnFailedError(PipelineError):
    def __init__(self, stage: str, reason: str, diagnostics: str = "") -> None:
        super().__init__(
            f"Failed to spawn stage '{stage}': {reason}",
            code="SPAWN_FAILED",
            diagnostics=diagnostics,
        )
        self.stage = stage


class StageCrashedError(PipelineError):
    def __init__(self, stage: str, exit_code: int, diagnostics: str = "") -> None:
        super().__init__(
            f"Stage '{stage}' exited with code {exit_code}",
            code="STAGE_CRASHED",
            diagnostics=diagnostics,
        )
        self.stage = stage
        self.exit_code = exit_code


class StartupTimeoutError(PipelineError):
    def __init__(self, timeout: float, diagnostics: str = "") -> None:
        super().__init__(
            f"Pipeline produced no audio within {timeout:g}s",
            code="STARTUP_TIMEOUT",
            diagnostics=diagnostics,
        )
        self.timeout = timeout


# === Panel sync ===


class SyncError(DomainError):
    """Raised when a control panel render cannot be delivered."""


class PanelRateLimitedError(SyncError):
    def __init__(self, retry_after: float | None = None) -> None:
        super().__init__("Control panel update was rate limited", code="PANEL_RATE_LIMITED")
        self.retry_after = retry_after
