"""Payment session state machine with transition validation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from momo_payments.errors import ConflictError


class SessionStatus(str, Enum):
    """Payment session status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class TransitionDecision(str, Enum):
    """What the store should do with a requested transition."""

    APPLY = "apply"
    NOOP = "noop"


@dataclass(frozen=True)
class TransitionEvent:
    """A requested status change for one session."""

    target: SessionStatus
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None


class SessionStateMachine:
    """State machine for payment session status transitions.

    Allowed transitions:
    - pending → processing
    - pending → expired
    - processing → completed
    - processing → failed
    - processing → expired

    A request for the status a session already has is a no-op. Every other
    request is a conflict; nothing outside the table ever changes state.
    """

    VALID_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
        SessionStatus.PENDING: frozenset({SessionStatus.PROCESSING, SessionStatus.EXPIRED}),
        SessionStatus.PROCESSING: frozenset(
            {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED}
        ),
        SessionStatus.COMPLETED: frozenset(),
        SessionStatus.FAILED: frozenset(),
        SessionStatus.EXPIRED: frozenset(),
    }

    TERMINAL = frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED}
    )

    # Outcomes that produce customer/admin notices
    NOTIFY_ON = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is in the table."""
        return SessionStatus(to_status) in cls.VALID_TRANSITIONS[SessionStatus(from_status)]

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return SessionStatus(status) in cls.TERMINAL

    @classmethod
    def decide(cls, current: str, target: str) -> TransitionDecision:
        """Decide how to handle a requested transition.

        Raises ConflictError for anything that is neither in the table nor
        already at the target.
        """
        current_status = SessionStatus(current)
        target_status = SessionStatus(target)

        if current_status == target_status:
            return TransitionDecision.NOOP

        if cls.can_transition(current_status, target_status):
            return TransitionDecision.APPLY

        if cls.is_terminal(current_status):
            reason = f"session is already {current_status.value}"
        else:
            reason = "transition not allowed"
        raise ConflictError(
            f"Cannot transition from '{current_status.value}' to "
            f"'{target_status.value}': {reason}",
            from_status=current_status.value,
            to_status=target_status.value,
        )

    @classmethod
    def path_to(cls, current: str, target: str) -> list[SessionStatus]:
        """Steps that move ``current`` to ``target`` through the table.

        A callback can report an outcome for a session whose initiation has
        not yet recorded the gateway acknowledgement; pending sessions then
        pass through processing first. Returns ``[target]`` in every other
        case, leaving validation to ``decide``.
        """
        current_status = SessionStatus(current)
        target_status = SessionStatus(target)
        if (
            current_status == SessionStatus.PENDING
            and target_status in (SessionStatus.COMPLETED, SessionStatus.FAILED)
        ):
            return [SessionStatus.PROCESSING, target_status]
        return [target_status]
