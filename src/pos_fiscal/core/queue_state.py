"""Queue entry state machine and retry policy.

Queue entries never have their ``state`` column written directly. Every change
goes through :func:`resolve_transition` (for submission outcomes) or
:func:`check_transition` (for claim and lease recovery), which reject anything
the table below does not allow::

    pending   --claim-->          in_flight
    retrying  --claim-->          in_flight
    in_flight --accepted-->       synced        (terminal)
    in_flight --transient-->      retrying      (attempts < max)
    in_flight --transient-->      dead_letter   (attempts == max, exhausted)
    in_flight --rejected-->       dead_letter   (validation)
    in_flight --configuration-->  dead_letter   (configuration, no attempt used)
    in_flight --lease expiry-->   pending       (crash recovery)

A claim may also take over an ``in_flight`` entry whose lease has expired
directly, under a new claim token; that counts as recovery followed by claim.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from pos_fiscal.core.errors import ProtocolViolationError
from pos_fiscal.core.settings import settings


class QueueState(str, Enum):
    """States a queue entry can be in."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SYNCED = "synced"
    DEAD_LETTER = "dead_letter"


class DeadLetterReason(str, Enum):
    """Why an entry stopped being retried automatically."""

    VALIDATION = "validation"
    EXHAUSTED = "exhausted"
    CONFIGURATION = "configuration"


class SaleFbrStatus(str, Enum):
    """Values of ``Sale.fbr_status``."""

    NOT_QUEUED = "not_queued"
    PENDING = "pending"
    SUBMITTED = "submitted"
    SYNCED = "synced"
    FAILED = "failed"


CLAIMABLE_STATES = frozenset({QueueState.PENDING, QueueState.RETRYING})
TERMINAL_STATES = frozenset({QueueState.SYNCED, QueueState.DEAD_LETTER})
ACTIVE_STATES = frozenset(set(QueueState) - TERMINAL_STATES)

ALLOWED_TRANSITIONS: dict[QueueState, frozenset[QueueState]] = {
    QueueState.PENDING: frozenset({QueueState.IN_FLIGHT}),
    QueueState.RETRYING: frozenset({QueueState.IN_FLIGHT}),
    QueueState.IN_FLIGHT: frozenset(
        {
            QueueState.SYNCED,
            QueueState.RETRYING,
            QueueState.DEAD_LETTER,
            QueueState.PENDING,
        }
    ),
    QueueState.SYNCED: frozenset(),
    QueueState.DEAD_LETTER: frozenset(),
}

SALE_STATUS_FOR_STATE: dict[QueueState, SaleFbrStatus] = {
    QueueState.PENDING: SaleFbrStatus.PENDING,
    QueueState.IN_FLIGHT: SaleFbrStatus.SUBMITTED,
    QueueState.RETRYING: SaleFbrStatus.PENDING,
    QueueState.SYNCED: SaleFbrStatus.SYNCED,
    QueueState.DEAD_LETTER: SaleFbrStatus.FAILED,
}


def check_transition(current: QueueState | str, target: QueueState | str) -> None:
    """Raise ProtocolViolationError unless ``current -> target`` is allowed."""
    source = QueueState(current)
    destination = QueueState(target)
    if destination not in ALLOWED_TRANSITIONS[source]:
        raise ProtocolViolationError(
            f"Illegal queue transition {source.value} -> {destination.value}"
        )


# Submission outcomes reported by the worker


@dataclass(frozen=True)
class Accepted:
    """The authority issued a fiscal invoice number."""

    invoice_number: str
    dated: str | None = None


@dataclass(frozen=True)
class TransientFailure:
    """Network error, timeout, 5xx or rate limit."""

    error: str


@dataclass(frozen=True)
class Rejected:
    """The authority returned structured validation errors."""

    errors: tuple[str, ...]

    @property
    def message(self) -> str:
        return "; ".join(self.errors) or "Rejected by FBR"


@dataclass(frozen=True)
class ConfigurationFailure:
    """The tenant cannot submit at all (missing credential, no reference data)."""

    error: str


Outcome = Accepted | TransientFailure | Rejected | ConfigurationFailure


@dataclass
class RetryPolicy:
    """Exponential backoff with a cap and symmetric jitter."""

    base_seconds: float = 60.0
    max_seconds: float = 3600.0
    jitter_ratio: float = 0.2
    max_attempts: int = 5
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            base_seconds=settings.queue_backoff_base_seconds,
            max_seconds=settings.queue_backoff_max_seconds,
            jitter_ratio=settings.queue_backoff_jitter_ratio,
            max_attempts=settings.queue_max_attempts,
        )

    def delay_seconds(self, attempt_count: int) -> float:
        """Return the delay before the next attempt.

        Args:
            attempt_count: Attempts recorded before the failure being handled

        Returns:
            ``base * 2**attempt_count`` capped at ``max_seconds``, jittered by
            up to ``jitter_ratio`` in either direction and never above the cap
        """
        exponent = max(0, attempt_count)
        delay = min(self.max_seconds, self.base_seconds * (2**exponent))
        if self.jitter_ratio > 0:
            delay *= 1 + self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, min(self.max_seconds, delay))


@dataclass(frozen=True)
class Transition:
    """The column values an outcome produces for an in-flight entry."""

    state: QueueState
    attempt_count: int
    next_attempt_at: datetime | None
    dead_letter_reason: DeadLetterReason | None
    last_error: str | None

    @property
    def sale_status(self) -> SaleFbrStatus:
        return SALE_STATUS_FOR_STATE[self.state]


def resolve_transition(
    current: QueueState | str,
    attempt_count: int,
    max_attempts: int,
    outcome: Outcome,
    now: datetime,
    policy: RetryPolicy,
) -> Transition:
    """Compute the next state for an in-flight entry given a submission outcome.

    Raises:
        ProtocolViolationError: If the entry is not ``in_flight``
    """
    source = QueueState(current)
    if source is not QueueState.IN_FLIGHT:
        raise ProtocolViolationError(
            f"Cannot record a result for an entry in state {source.value}"
        )

    if isinstance(outcome, Accepted):
        return Transition(QueueState.SYNCED, attempt_count + 1, None, None, None)

    if isinstance(outcome, Rejected):
        return Transition(
            QueueState.DEAD_LETTER,
            attempt_count + 1,
            None,
            DeadLetterReason.VALIDATION,
            outcome.message,
        )

    if isinstance(outcome, ConfigurationFailure):
        return Transition(
            QueueState.DEAD_LETTER,
            attempt_count,
            None,
            DeadLetterReason.CONFIGURATION,
            outcome.error,
        )

    if isinstance(outcome, TransientFailure):
        attempts = attempt_count + 1
        if attempts >= max_attempts:
            return Transition(
                QueueState.DEAD_LETTER,
                attempts,
                None,
                DeadLetterReason.EXHAUSTED,
                f"Retries exhausted after {attempts} attempts: {outcome.error}",
            )
        delay = policy.delay_seconds(attempt_count)
        return Transition(
            QueueState.RETRYING,
            attempts,
            now + timedelta(seconds=delay),
            None,
            outcome.error,
        )

    raise ProtocolViolationError(f"Unknown submission outcome {outcome!r}")
