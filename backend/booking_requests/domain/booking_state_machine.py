from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Union

from booking_requests.config import DEFAULT_REJECTION_REASON


BookingStatus = Literal[
    "PENDING_CONFIRMATION",
    "CONFIRMED",
    "REJECTED",
]

PENDING_CONFIRMATION: BookingStatus = "PENDING_CONFIRMATION"
CONFIRMED: BookingStatus = "CONFIRMED"
REJECTED: BookingStatus = "REJECTED"

_ALLOWED_TRANSITIONS = {
    PENDING_CONFIRMATION: {CONFIRMED, REJECTED},
    CONFIRMED: set(),
    REJECTED: set(),
}


class BookingStateTransitionError(ValueError):
    """Raised when an invalid booking state transition is requested."""

    def __init__(self, current: Optional[str], target: str) -> None:
        super().__init__(f"Invalid booking state transition: {current} -> {target}")
        self.current = current
        self.target = target


def validate_transition(current: Optional[str], target: str) -> None:
    """Validate that a transition from current -> target is allowed.

    Raises BookingStateTransitionError if not allowed.
    """

    allowed = _ALLOWED_TRANSITIONS.get(current, set())  # type: ignore[arg-type]
    if target not in allowed:
        raise BookingStateTransitionError(current=current, target=target)


@dataclass(frozen=True)
class ApproveAction:
    """Approve: charge the stored payment method, then confirm."""

    name: Literal["approve"] = "approve"

    @property
    def target_status(self) -> BookingStatus:
        return CONFIRMED


@dataclass(frozen=True)
class RejectAction:
    """Reject: no charge, booking becomes REJECTED with a reason."""

    reason: str = DEFAULT_REJECTION_REASON
    name: Literal["reject"] = "reject"

    @property
    def target_status(self) -> BookingStatus:
        return REJECTED


ReviewAction = Union[ApproveAction, RejectAction]


def parse_action(action: str, rejection_reason: Optional[str] = None) -> ReviewAction:
    """Build the typed action from the wire representation.

    A blank rejection reason falls back to the default placeholder; a reason
    sent along with an approval is ignored.
    """

    if action == "approve":
        return ApproveAction()
    if action == "reject":
        reason = (rejection_reason or "").strip() or DEFAULT_REJECTION_REASON
        return RejectAction(reason=reason)
    raise ValueError(f"Unknown booking request action: {action!r}")
