"""Error taxonomy for the drift engine.

Errors fall into three groups:
- Fatal for the whole invocation: AuthError, NotFoundError
- Retryable at the call site: TransientError
- Fatal only for one rule: ParseError, UnrecognizedFormat

Per-rule errors are collected as RuleError records instead of aborting
the batch; see reconciler.py.
"""

from __future__ import annotations

from dataclasses import dataclass


class RuleDriftError(Exception):
    """Base class for all engine errors."""

    classification = "RuleDriftError"


class AuthError(RuleDriftError):
    """Raised when the remote service rejects our credential."""

    classification = "AuthError"


class TransientError(RuleDriftError):
    """Raised for network errors, throttling, 5xx responses and timeouts.

    Attributes:
        retry_after: Server-requested delay in seconds, if any.
    """

    classification = "TransientError"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RemoteError(RuleDriftError):
    """Raised for any other unexpected remote response."""

    classification = "RemoteError"


class NotFoundError(RuleDriftError):
    """Raised when an organization or environment does not exist."""

    classification = "NotFoundError"


class ParseError(RuleDriftError):
    """Raised when a desired-state record or collection is malformed."""

    classification = "ParseError"


class StoreError(RuleDriftError):
    """Raised when the desired-state store cannot be written."""

    classification = "StoreError"


class UnrecognizedFormat(RuleDriftError):
    """Raised when a remote field matches none of the known shapes."""

    classification = "UnrecognizedFormat"


class ImportLimitExceeded(RuleDriftError):
    """Raised when an import would write more rules than allowed."""

    classification = "ImportLimitExceeded"


class ReconcileCancelled(RuleDriftError):
    """Raised when the run was cancelled by signal or deadline."""

    classification = "Cancelled"


@dataclass(frozen=True)
class RuleError:
    """A failure scoped to a single rule.

    Attributes:
        rule_identifier: Rule name, or None when it could not be read.
        classification: Error class name shown in reports.
        message: Human-readable detail.
        source: Which side produced it ("desired", "actual" or "store").
    """

    rule_identifier: str | None
    classification: str
    message: str
    source: str

    @classmethod
    def from_exception(
        cls, rule_identifier: str | None, error: Exception, source: str
    ) -> RuleError:
        classification = getattr(error, "classification", type(error).__name__)
        return cls(
            rule_identifier=rule_identifier,
            classification=classification,
            message=str(error),
            source=source,
        )
