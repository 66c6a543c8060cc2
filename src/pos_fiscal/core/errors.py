"""Error taxonomy for the submission engine.

Every failure the engine surfaces falls in one of four categories so callers
(the HTTP layer, the worker and the cron entry point) can tell "fix your data"
from "try again later" from "contact support":

- ``validation``: the payload is wrong; permanent until the sale changes
- ``transient``: infrastructure trouble; retried with backoff
- ``configuration``: tenant setup problem (credential, reference data)
- ``protocol``: a defect in the engine itself, always logged loudly
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

CATEGORY_VALIDATION = "validation"
CATEGORY_TRANSIENT = "transient"
CATEGORY_CONFIGURATION = "configuration"
CATEGORY_PROTOCOL = "protocol"


@dataclass(frozen=True)
class Violation:
    """A single reason an invoice cannot be submitted."""

    field: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


class FiscalError(RuntimeError):
    """Base exception for submission engine failures."""

    category = CATEGORY_PROTOCOL

    def __init__(self, message: str, *, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])


class InvoiceValidationError(FiscalError):
    """Raised when a sale cannot be transformed into a valid wire payload.

    Carries the complete list of violations, never just the first one.
    """

    category = CATEGORY_VALIDATION

    def __init__(self, violations: Sequence[Violation], message: str | None = None) -> None:
        self.violations = list(violations)
        super().__init__(
            message or format_violations(self.violations),
            errors=[violation.message for violation in self.violations],
        )


class TransientSubmissionError(FiscalError):
    """Raised when the submission failed for a reason expected to clear on retry."""

    category = CATEGORY_TRANSIENT


class ConfigurationError(FiscalError):
    """Raised when a tenant is not set up to submit invoices."""

    category = CATEGORY_CONFIGURATION


class CredentialNotConfiguredError(ConfigurationError):
    """Raised when a tenant has no usable FBR credential."""

    def __init__(self, message: str = "FBR not configured for this tenant") -> None:
        super().__init__(message)


class ReferenceDataUnavailableError(ConfigurationError):
    """Raised when no reference data set has ever been loaded."""


class ProtocolViolationError(FiscalError):
    """Raised when the queue protocol is broken (double processing, bad transition)."""

    category = CATEGORY_PROTOCOL


class AlreadyQueuedError(ProtocolViolationError):
    """Raised when a sale already has an active queue entry."""

    def __init__(self, sale_id: int, entry_id: int | None = None) -> None:
        self.sale_id = sale_id
        self.entry_id = entry_id
        super().__init__(f"Sale {sale_id} already has an active FBR queue entry")


class AlreadySyncedError(ProtocolViolationError):
    """Raised when a sale was already accepted by FBR and holds a fiscal number."""

    def __init__(self, sale_id: int, invoice_number: str | None = None) -> None:
        self.sale_id = sale_id
        self.invoice_number = invoice_number
        super().__init__(
            f"Sale {sale_id} was already accepted by FBR as invoice {invoice_number}"
        )


def format_violations(violations: Sequence[Violation]) -> str:
    """Join violation messages into the single line stored on the sale."""
    return "; ".join(violation.message for violation in violations)
