"""
Capture identifiers.

Captures are keyed by a ULID: 48-bit millisecond timestamp followed by 80
random bits, encoded as 26 characters of Crockford base32. Lexicographic
order of ids matches creation order, and the id doubles as the filename
stem of the exported note.
"""

import re
import secrets
import time

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH = 26

_ULID_RE = re.compile(r"^[0-7][0-9A-HJKMNP-TV-Z]{25}$")


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def generate_capture_id(timestamp_ms: int | None = None) -> str:
    """
    Generate a new time-sortable capture id.

    Args:
        timestamp_ms: Milliseconds since the epoch (default: now)

    Returns:
        26-character ULID string
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    if timestamp_ms < 0 or timestamp_ms >= 1 << 48:
        raise ValueError(f"timestamp out of ULID range: {timestamp_ms}")
    return _encode(timestamp_ms, 10) + _encode(secrets.randbits(80), 16)


def is_valid_capture_id(value: str) -> bool:
    """Check that a string is a well-formed capture id."""
    return isinstance(value, str) and _ULID_RE.match(value) is not None


def capture_id_timestamp_ms(value: str) -> int:
    """Decode the millisecond timestamp embedded in a capture id."""
    if not is_valid_capture_id(value):
        raise ValueError(f"invalid capture id: {value!r}")
    result = 0
    for char in value[:10]:
        result = (result << 5) | CROCKFORD_ALPHABET.index(char)
    return result
