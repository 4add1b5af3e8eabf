"""
Capture lifecycle state machine.
"""

from .transitions import (
    TRANSITIONS,
    TransitionResult,
    assert_valid_transition,
    is_terminal,
    list_valid_transitions,
    validate_transition,
)

__all__ = [
    "TRANSITIONS",
    "TransitionResult",
    "assert_valid_transition",
    "is_terminal",
    "list_valid_transitions",
    "validate_transition",
]
