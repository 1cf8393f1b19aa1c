"""Exception types raised across the probe engine."""

from __future__ import annotations

from typing import Optional

from .models import FailureKind


class ProbeError(Exception):
    """Base class for probe failures that map onto a step failure kind."""

    kind: FailureKind = FailureKind.EXHAUSTED_RETRIES


class TransientNetworkFailure(ProbeError):
    """Network error, timeout, rate limit or 5xx; safe to retry."""

    kind = FailureKind.TRANSIENT_NETWORK_FAILURE

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RemoteRejection(ProbeError):
    """The platform refused the request with a non-retryable 4xx."""

    kind = FailureKind.REMOTE_REJECTION

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class MalformedInboundPayload(ProbeError):
    kind = FailureKind.MALFORMED_INBOUND_PAYLOAD


class DuplicateCorrelation(ProbeError):
    """A live expectation already exists for the correlation key."""

    kind = FailureKind.DUPLICATE_CORRELATION

    def __init__(self, correlation_key: str) -> None:
        super().__init__(f"Correlation key {correlation_key} already has a live expectation")
        self.correlation_key = correlation_key


class ExhaustedRetries(ProbeError):
    """Every allowed attempt of a step failed."""

    kind = FailureKind.EXHAUSTED_RETRIES

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class StimulusError(ProbeError):
    """A stimulus could not be rendered from the run context."""

    kind = FailureKind.INVALID_STIMULUS


class ConcurrencyLimitExceeded(Exception):
    """Raised when launching a run would exceed the concurrent-runs limit."""


class ConfigError(Exception):
    """Configuration or scenario file could not be loaded."""
