"""
Atomic vault writer.

A note becomes visible in the vault all at once or not at all:

1. write the full content to <vault>/.trash/<id>.tmp
2. flush and fsync the scratch file
3. rename it over <vault>/inbox/<id>.md (atomic on one filesystem)
4. fsync the inbox directory so the rename itself is durable

The scratch directory lives inside the vault so the rename never crosses a
filesystem boundary. A crash before step 3 leaves only a scratch file,
which remove_stale_scratch() clears on the next startup.
"""

import contextlib
import errno
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import VaultFatalError, VaultWriteError

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"
SCRATCH_SUFFIX = ".tmp"

# Disk full, read-only filesystem, quota: nothing will succeed until a human acts
FATAL_ERRNOS = frozenset(
    code
    for code in (
        errno.ENOSPC,
        errno.EROFS,
        getattr(errno, "EDQUOT", None),
    )
    if code is not None
)

# Permissions, network mounts, locks: worth retrying on a later cycle
TRANSIENT_ERRNOS = frozenset(
    code
    for code in (
        errno.EACCES,
        errno.EPERM,
        errno.EAGAIN,
        errno.EBUSY,
        errno.EINTR,
        errno.ETIMEDOUT,
        getattr(errno, "ENETDOWN", None),
        getattr(errno, "ENETUNREACH", None),
        getattr(errno, "EHOSTDOWN", None),
        getattr(errno, "ESTALE", None),
    )
    if code is not None
)


def classify_os_error(error: OSError, capture_id: str | None = None) -> VaultWriteError:
    """
    Map an OSError onto the vault error taxonomy.

    Unknown codes are treated as transient: the capture stays where it is
    and the next cycle tries again.
    """
    code = errno.errorcode.get(error.errno, "EUNKNOWN") if error.errno else "EUNKNOWN"
    message = f"{code}: {error.strerror or error}"
    if error.filename:
        message += f" ({error.filename})"
    if error.errno in FATAL_ERRNOS:
        return VaultFatalError(message, capture_id=capture_id, errno_code=code)
    return VaultWriteError(message, capture_id=capture_id, errno_code=code)


@dataclass
class WriteOutcome:
    """Result of an atomic write."""

    vault_path: str  # Relative to the vault root, POSIX separators
    bytes_written: int


class VaultWriter:
    """
    Filesystem access to the user's vault.

    All paths are confined to the configured root.
    """

    def __init__(self, root: Path | str, inbox_dir: str = "inbox", scratch_dir: str = ".trash"):
        """
        Initialize vault writer.

        Args:
            root: Vault root directory
            inbox_dir: Folder (relative to root) receiving exported notes
            scratch_dir: Folder (relative to root) for in-flight scratch files
        """
        self.root = Path(root)
        self.inbox_dir = inbox_dir
        self.scratch_dir = scratch_dir

    def relative_path(self, capture_id: str) -> str:
        """Vault-relative path of a capture's note."""
        return f"{self.inbox_dir}/{capture_id}{NOTE_SUFFIX}"

    def resolve(self, vault_path: str) -> Path:
        """Absolute path for a vault-relative path, refusing to leave the vault."""
        root = self.root.resolve()
        candidate = (root / vault_path).resolve()
        if candidate != root and root not in candidate.parents:
            raise ValueError(f"Path escapes vault root: {vault_path}")
        return candidate

    def scratch_path(self, capture_id: str) -> Path:
        return self.root / self.scratch_dir / f"{capture_id}{SCRATCH_SUFFIX}"

    def exists(self, vault_path: str) -> bool:
        return self.resolve(vault_path).exists()

    def read_text(self, vault_path: str) -> str:
        """
        Read an existing note.

        Raises:
            OSError, UnicodeDecodeError: If the file cannot be read as UTF-8
        """
        return self.resolve(vault_path).read_text(encoding="utf-8")

    def write_atomic(self, capture_id: str, content: str) -> WriteOutcome:
        """
        Write a note via scratch file, fsync and rename.

        Args:
            capture_id: Capture id (filename stem)
            content: Full note text

        Returns:
            WriteOutcome with the vault-relative path

        Raises:
            VaultWriteError: Recoverable failure, nothing visible in the vault
            VaultFatalError: Disk full or read-only vault
        """
        vault_path = self.relative_path(capture_id)
        target = self.resolve(vault_path)
        scratch = self.scratch_path(capture_id)
        data = content.encode("utf-8")

        try:
            scratch.parent.mkdir(parents=True, exist_ok=True)
            target.parent.mkdir(parents=True, exist_ok=True)

            with open(scratch, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            os.replace(scratch, target)
            _fsync_directory(target.parent)
        except OSError as e:
            with contextlib.suppress(OSError):
                scratch.unlink(missing_ok=True)
            raise classify_os_error(e, capture_id=capture_id) from e

        logger.debug(f"Wrote {len(data)} bytes to {vault_path}")
        return WriteOutcome(vault_path=vault_path, bytes_written=len(data))

    def remove_stale_scratch(self) -> list[Path]:
        """Delete scratch files left behind by an interrupted write."""
        scratch_dir = self.root / self.scratch_dir
        if not scratch_dir.is_dir():
            return []
        removed = []
        for path in sorted(scratch_dir.glob(f"*{SCRATCH_SUFFIX}")):
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove stale scratch file {path}: {e}")
                continue
            removed.append(path)
        if removed:
            logger.info(f"Removed {len(removed)} stale scratch files from {scratch_dir}")
        return removed


def _fsync_directory(path: Path) -> None:
    """Persist a directory entry change (no-op where directories cannot be opened)."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
