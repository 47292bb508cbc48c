"""Domain exception hierarchy for the redlib wrapper."""

from __future__ import annotations

from enum import StrEnum


class UpdateFailureReason(StrEnum):
    """Machine-readable reasons carried by ``UpdateFailed`` events."""

    FETCH_FAILED = "fetch_failed"
    VERIFY_FAILED = "verify_failed"
    EXTRACT_FAILED = "extract_failed"
    SANITY_FAILED = "sanity_failed"
    SWAP_FAILED = "swap_failed"
    UNKNOWN_ERROR = "unknown_error"


class RunFailureReason(StrEnum):
    """Machine-readable reasons carried by ``RunFailed`` events."""

    SPAWN_FAILED = "spawn_failed"
    PROCESS_FAILED = "process_failed"
    UNKNOWN_ERROR = "unknown_error"


class RedlibWrapperError(RuntimeError):
    """Base class for all domain-level wrapper errors."""


class ConfigValidationError(RedlibWrapperError):
    """Raised when configuration cannot be validated safely."""


class UpdateError(RedlibWrapperError):
    """Raised when an update phase fails."""

    reason: UpdateFailureReason = UpdateFailureReason.UNKNOWN_ERROR


class FetchError(UpdateError):
    """Raised when the update source cannot be read or downloaded."""

    reason = UpdateFailureReason.FETCH_FAILED


class VerifyError(UpdateError):
    """Raised when the fetched artifact fails integrity checks."""

    reason = UpdateFailureReason.VERIFY_FAILED


class ExtractError(UpdateError):
    """Raised when the artifact cannot be unpacked or staged."""

    reason = UpdateFailureReason.EXTRACT_FAILED


class SanityCheckError(UpdateError):
    """Raised when the staged binary does not behave like the managed binary."""

    reason = UpdateFailureReason.SANITY_FAILED


class SwapError(UpdateError):
    """Raised when activating the staged binary fails."""

    reason = UpdateFailureReason.SWAP_FAILED


class ProcessSpawnError(RedlibWrapperError):
    """Raised when a process cannot be started at all."""

    def __init__(self, message: str, binary_path: str = "") -> None:
        super().__init__(message)
        self.binary_path = binary_path


class ProcessFailedError(RedlibWrapperError):
    """Raised when a started process exits with a non-zero code."""

    def __init__(self, exit_code: int, message: str | None = None) -> None:
        super().__init__(message or f"Process exited with code {exit_code}")
        self.exit_code = exit_code
