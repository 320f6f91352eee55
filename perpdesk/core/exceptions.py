"""perpdesk.core.exceptions

Errors are part of the interface.

Every failure the core produces is one of these. Callers get a kind, a stage
and enough context to retry by hand.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    TIMEOUT = "timeout"
    HTTP = "http"
    INVALID_JSON = "invalid_json"
    SCHEMA = "schema"
    POST_VALIDATION = "post_validation"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> ErrorKind:
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


class PerpdeskError(Exception):
    """Base exception for perpdesk."""


class ConfigError(PerpdeskError):
    """Configuration is missing, invalid, or inconsistent."""


class TransportError(PerpdeskError):
    """A boundary call failed at the transport level."""

    def __init__(self, kind: ErrorKind, message: str, *, status: int | None = None) -> None:
        self.kind = kind
        self.status = status
        super().__init__(f"[{kind}] {message}")


class PayloadError(TransportError):
    """The response arrived but could not be understood."""


class PipelineError(PerpdeskError):
    def __init__(self, kind: ErrorKind, message: str, *, stage: str | None = None) -> None:
        self.kind = kind
        self.stage = stage
        self.message = message
        super().__init__(f"{stage or 'pipeline'}: [{kind}] {message}")


class PipelineBusyError(PerpdeskError):
    """A run is already in flight."""


class InvalidTransitionError(PerpdeskError):
    """The pipeline state machine does not allow this event here."""


@dataclass(frozen=True, slots=True)
class FieldMismatch:
    symbol: str
    field: str
    expected: float
    actual: float

    def __str__(self) -> str:
        return f"{self.symbol} {self.field}: expected {self.expected}, got {self.actual}"


class SubmissionError(PerpdeskError):
    """Orders were not sent."""


class MissingPlanError(SubmissionError):
    """No strategy plan is selected for a symbol."""


class MissingNumericError(SubmissionError):
    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Missing numeric values, orders not sent.\n" + "\n".join(self.problems))


class StrictMismatchError(SubmissionError):
    def __init__(self, mismatches: list[FieldMismatch]) -> None:
        self.mismatches = list(mismatches)
        lines = "\n".join(str(m) for m in self.mismatches)
        super().__init__(f"Strict 1:1 mismatch, orders not sent.\n{lines}")


class SizingRejectedError(SubmissionError):
    def __init__(self, violations: dict[str, list[str]]) -> None:
        self.violations = dict(violations)
        lines = "\n".join(f"{sym}: {', '.join(v)}" for sym, v in sorted(self.violations.items()))
        super().__init__(f"Sizing rejected, orders not sent.\n{lines}")


class RateLimitedError(PerpdeskError):
    """The exchange asked us to back off."""

    def __init__(self, message: str, *, ban_until: float | None = None) -> None:
        self.ban_until = ban_until
        super().__init__(message)


class MissingCredentialsError(PerpdeskError):
    """The exchange boundary has no API keys configured."""
