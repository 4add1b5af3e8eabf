"""
Markdown note rendering.

Every exported note starts with a YAML front-matter block identifying the
capture, followed by the body:

    ---
    id: 01HZX3Q5B8K2M9N4P6R7S8T0VW
    source: voice
    captured_at: 2025-01-15T10:30:00.000000Z
    content_hash: 3f7a...
    ---

    <body>

The exporter reads the front matter back, and re-hashes the body, to detect
collisions.
"""

import yaml

from ..schemas.capture import CaptureRecord, CaptureSource, FailureInfo
from ..schemas.dedupe import compute_content_hash, normalized_body

FRONT_MATTER_DELIMITER = "---"


def render_front_matter(capture: CaptureRecord, content_hash: str | None) -> str:
    lines = [
        FRONT_MATTER_DELIMITER,
        f"id: {capture.id}",
        f"source: {capture.source.value}",
        f"captured_at: {capture.created_at}",
        f"content_hash: {content_hash if content_hash else 'null'}",
        FRONT_MATTER_DELIMITER,
    ]
    return "\n".join(lines)


def render_note(capture: CaptureRecord) -> str:
    """Render a transcribed capture as a Markdown note.

    The body is the normalized text the content hash was computed from.
    """
    body = normalized_body(capture.raw_content)
    return f"{render_front_matter(capture, capture.content_hash)}\n\n{body}\n"


def render_placeholder(capture: CaptureRecord, failure: FailureInfo | None = None) -> str:
    """
    Render the permanent placeholder for a capture whose transcription failed.

    The note carries no content hash: the content never existed.
    """
    failure = failure or capture.metadata.failure
    kind = failure.kind if failure else "unknown"
    message = failure.message if failure else "no error recorded"
    attempts = failure.attempt_count if failure else capture.metadata.attempt_count

    if capture.source == CaptureSource.VOICE:
        reference = f"Audio file: {capture.metadata.source_path or capture.native_id}"
    else:
        reference = f"Message-ID: {capture.native_id}"

    body = "\n".join(
        [
            f"[TRANSCRIPTION_FAILED: {kind}]",
            "",
            reference,
            f"Captured at: {capture.created_at}",
            f"Error: {message}",
            f"Retry count: {attempts}",
            "",
            "This placeholder is permanent and will not be retried automatically.",
            "To try again, delete this note and resubmit the original recording.",
        ]
    )
    return f"{render_front_matter(capture, None)}\n\n{body}\n"


def split_front_matter(text: str) -> tuple[dict | None, str]:
    """
    Split a note into its front-matter mapping and its body.

    Returns:
        (mapping, body). The mapping is None when the text has no
        parseable front matter, and the body is then the whole text.
    """
    lines = text.splitlines()
    if not lines or lines[0].strip() != FRONT_MATTER_DELIMITER:
        return None, text
    for index in range(1, len(lines)):
        if lines[index].strip() == FRONT_MATTER_DELIMITER:
            block = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1 :])
            break
    else:
        return None, text

    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError:
        return None, text
    if not isinstance(data, dict):
        return None, text
    return data, body


def parse_front_matter(text: str) -> dict | None:
    """
    Extract the front-matter mapping of a note.

    Returns:
        The parsed mapping, or None when the text has no parseable
        front matter (the caller treats that as foreign content)
    """
    return split_front_matter(text)[0]


def body_hash(body: str) -> str:
    """Content hash of a note body as written by render_note."""
    return compute_content_hash(body, strip_html=False)


def front_matter_value(front_matter: dict, key: str) -> str | None:
    """Read a front-matter value as text (YAML may have typed it)."""
    value = front_matter.get(key)
    return None if value is None else str(value)
