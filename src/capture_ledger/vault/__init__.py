"""
Vault access: note rendering and atomic writes.
"""

from .formatter import (
    body_hash,
    parse_front_matter,
    render_note,
    render_placeholder,
    split_front_matter,
)
from .writer import VaultWriter, WriteOutcome, classify_os_error

__all__ = [
    "VaultWriter",
    "WriteOutcome",
    "body_hash",
    "classify_os_error",
    "parse_front_matter",
    "render_note",
    "render_placeholder",
    "split_front_matter",
]
