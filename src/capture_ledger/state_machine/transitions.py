"""
Capture status transitions.

    staged ──────────────┬──> transcribed ──┬──> exported
      │                  │                  └──> exported_duplicate
      │                  └──> exported_duplicate
      └──> failed_transcription ──> exported_placeholder

Exported states are terminal: nothing leaves them.

validate_transition is pure and total over CaptureStatus, so it is safe to
call from anywhere (including before touching the store).
"""

from dataclasses import dataclass

from ..errors import InvalidTransition, TerminalStateViolation
from ..schemas.capture import TERMINAL_STATUSES, CaptureStatus

TRANSITIONS: dict[CaptureStatus, frozenset[CaptureStatus]] = {
    CaptureStatus.STAGED: frozenset(
        {
            CaptureStatus.TRANSCRIBED,
            CaptureStatus.FAILED_TRANSCRIPTION,
            CaptureStatus.EXPORTED_DUPLICATE,
        }
    ),
    CaptureStatus.TRANSCRIBED: frozenset(
        {
            CaptureStatus.EXPORTED,
            CaptureStatus.EXPORTED_DUPLICATE,
        }
    ),
    CaptureStatus.FAILED_TRANSCRIPTION: frozenset({CaptureStatus.EXPORTED_PLACEHOLDER}),
    CaptureStatus.EXPORTED: frozenset(),
    CaptureStatus.EXPORTED_DUPLICATE: frozenset(),
    CaptureStatus.EXPORTED_PLACEHOLDER: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of validating a status change."""

    from_status: CaptureStatus
    to_status: CaptureStatus
    allowed: bool
    reason: str | None = None
    terminal_violation: bool = False

    def raise_if_invalid(self, capture_id: str | None = None) -> None:
        """Raise the matching error when the transition is not allowed."""
        if self.allowed:
            return
        if self.terminal_violation:
            raise TerminalStateViolation(self.reason or "", capture_id=capture_id)
        raise InvalidTransition(self.reason or "", capture_id=capture_id)


def is_terminal(status: CaptureStatus | str) -> bool:
    """Check whether a status is terminal (exported*)."""
    return CaptureStatus(status) in TERMINAL_STATUSES


def list_valid_transitions(status: CaptureStatus | str) -> list[CaptureStatus]:
    """Statuses reachable in one step, in declaration order."""
    allowed = TRANSITIONS[CaptureStatus(status)]
    return [s for s in CaptureStatus if s in allowed]


def validate_transition(
    from_status: CaptureStatus | str, to_status: CaptureStatus | str
) -> TransitionResult:
    """
    Validate a status change without raising.

    Args:
        from_status: Current status
        to_status: Requested status

    Returns:
        TransitionResult with allowed flag and a human-readable reason
    """
    current = CaptureStatus(from_status)
    target = CaptureStatus(to_status)

    if is_terminal(current):
        return TransitionResult(
            from_status=current,
            to_status=target,
            allowed=False,
            reason=f"Cannot transition from terminal state: {current.value}",
            terminal_violation=True,
        )

    if target not in TRANSITIONS[current]:
        valid = ", ".join(s.value for s in list_valid_transitions(current))
        return TransitionResult(
            from_status=current,
            to_status=target,
            allowed=False,
            reason=(
                f"Invalid transition: {current.value} -> {target.value}. "
                f"Valid transitions: {valid}"
            ),
        )

    return TransitionResult(from_status=current, to_status=target, allowed=True)


def assert_valid_transition(
    from_status: CaptureStatus | str,
    to_status: CaptureStatus | str,
    capture_id: str | None = None,
) -> None:
    """
    Raise unless the transition is allowed.

    Raises:
        TerminalStateViolation: If from_status is terminal
        InvalidTransition: If to_status is not reachable from from_status
    """
    validate_transition(from_status, to_status).raise_if_invalid(capture_id)
