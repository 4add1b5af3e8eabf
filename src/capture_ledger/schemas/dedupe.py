"""
Content hashing and fingerprints (CRITICAL).

These functions define capture identity for deduplication. They must stay
stable across releases: a change here silently breaks duplicate detection
against every capture already in the ledger.

Two identities exist:

1. content_hash: SHA-256 of the normalized text body.
   - Email: computed at staging from the message body
   - Voice: computed late, once the transcript exists
2. partial_fingerprint: SHA-256 of the first 4 MiB of an audio file.
   - Computed at staging, before transcription
   - Catches re-observation of the same recording
"""

import hashlib
import html
import re
from pathlib import Path

# Bytes read from the head of an audio file for its fingerprint
FINGERPRINT_BYTES = 4 * 1024 * 1024

# Length of a SHA-256 hex digest
HASH_LENGTH = 64

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_BREAK_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_INLINE_WS_RE = re.compile(r"[^\S\n]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


def strip_markup(text: str) -> str:
    """
    Remove HTML markup from a message body.

    Script and style blocks are dropped with their content, block-level
    closing tags become line breaks, remaining tags are removed and
    entities are decoded.
    """
    if not text:
        return ""
    stripped = _SCRIPT_STYLE_RE.sub("", text)
    stripped = _BLOCK_BREAK_RE.sub("\n", stripped)
    stripped = _TAG_RE.sub("", stripped)
    return html.unescape(stripped)


def normalize_text(text: str) -> str:
    """
    Normalize text so equivalent bodies hash identically.

    - Line endings (CRLF, CR) become LF
    - Runs of spaces/tabs collapse to one space, each line is trimmed
    - Three or more newlines collapse to a single blank line
    - Leading and trailing whitespace is removed

    Args:
        text: Plain text (strip markup first for HTML bodies)

    Returns:
        Normalized text
    """
    if not text:
        return ""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_WS_RE.sub(" ", line).strip() for line in normalized.split("\n")]
    normalized = "\n".join(lines)
    normalized = _BLANK_RUN_RE.sub("\n\n", normalized)
    return normalized.strip()


def normalized_body(content: str, strip_html: bool = True) -> str:
    """The exact text a content hash is computed from (and a note body shows)."""
    return normalize_text(strip_markup(content) if strip_html else content)


def compute_content_hash(content: str, strip_html: bool = True) -> str:
    """
    Compute the content hash of a capture body.

    Args:
        content: Raw body text (transcript or email body)
        strip_html: Remove HTML markup before normalizing

    Returns:
        64-character lowercase hex SHA-256 hash
    """
    return hashlib.sha256(normalized_body(content, strip_html).encode("utf-8")).hexdigest()


def compute_partial_fingerprint(data: bytes) -> str:
    """SHA-256 of the leading FINGERPRINT_BYTES of raw audio data."""
    return hashlib.sha256(data[:FINGERPRINT_BYTES]).hexdigest()


def compute_audio_fingerprint(path: Path | str, limit: int = FINGERPRINT_BYTES) -> str:
    """
    Fingerprint an audio file from its first `limit` bytes.

    Reads in chunks so large recordings are never loaded fully.

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.sha256()
    remaining = limit
    with open(path, "rb") as f:
        while remaining > 0:
            chunk = f.read(min(65536, remaining))
            if not chunk:
                break
            digest.update(chunk)
            remaining -= len(chunk)
    return digest.hexdigest()


def is_valid_hash(value: str | None) -> bool:
    """Check that a value is a lowercase hex SHA-256 digest."""
    return bool(value) and _HEX_RE.match(value) is not None
