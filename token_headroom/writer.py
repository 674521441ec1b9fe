from __future__ import annotations

import logging
import os
import shutil
import signal
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from token_headroom.errors import WriteError, WriteInterrupted

logger = logging.getLogger(__name__)

BACKUP_REL_DIR = ".claude/backups"
BACKUP_TS_FORMAT = "%Y%m%dT%H%M%SZ"

_MINT = object()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except FileNotFoundError:
            pass


@contextmanager
def defer_interrupts() -> Iterator[None]:
    """Hold SIGINT/SIGTERM until the enclosed block finishes, then re-deliver."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    received: list[int] = []
    previous: dict[int, Any] = {}

    def _hold(signum: int, _frame: Any) -> None:
        received.append(signum)

    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _hold)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        if received:
            logger.warning("Interrupt received during write; re-raising after completion")
            raise KeyboardInterrupt


class WriteAuthorization:
    """Proof that the current run may write. Issued only for non-dry runs."""

    __slots__ = ("issued_at",)

    def __init__(self, _mint: object) -> None:
        if _mint is not _MINT:
            raise TypeError("WriteAuthorization is issued by RunConfig.write_authorization()")
        self.issued_at = utc_now()


def issue_write_authorization(*, dry_run: bool) -> WriteAuthorization | None:
    if dry_run:
        return None
    return WriteAuthorization(_MINT)


@dataclass(frozen=True)
class Backup:
    original_path: Path
    backup_path: Path
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {
            "original_path": str(self.original_path),
            "backup_path": str(self.backup_path),
            "timestamp": self.timestamp,
        }


class AtomicWriter:
    def __init__(self, authorization: WriteAuthorization, backup_dir: Path) -> None:
        if not isinstance(authorization, WriteAuthorization):
            raise TypeError("AtomicWriter requires a WriteAuthorization")
        self.authorization = authorization
        self.backup_dir = backup_dir

    def _next_backup_path(self, path: Path, ts: str) -> Path:
        candidate = self.backup_dir / f"{path.name}.{ts}.bak"
        n = 1
        while candidate.exists():
            candidate = self.backup_dir / f"{path.name}.{ts}.{n}.bak"
            n += 1
        return candidate

    def backup(self, path: Path) -> Backup:
        now = datetime.now(timezone.utc)
        ts = now.strftime(BACKUP_TS_FORMAT)
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            original = path.read_bytes()
            backup_path = self._next_backup_path(path, ts)
            shutil.copy2(path, backup_path)
            if backup_path.read_bytes() != original:
                raise WriteError(f"backup verification failed: {backup_path}")
        except OSError as exc:
            raise WriteError(f"backup failed for {path}: {exc}") from exc
        logger.info("Backup written: %s -> %s", path, backup_path)
        return Backup(original_path=path, backup_path=backup_path, timestamp=now.strftime("%Y-%m-%dT%H:%M:%SZ"))

    def apply(self, path: Path, new_content: str, *, critical: bool = False) -> Backup:
        """Back up path, then replace it with new_content.

        The backup always completes before the target is touched; a failure
        after that point raises WriteError carrying the backup. An interrupt
        that arrives mid-write is re-raised once the write is done, as
        WriteInterrupted carrying the backup.
        """

        written: Backup | None = None
        try:
            with defer_interrupts():
                backup = self.backup(path)
                try:
                    atomic_write_text(path, new_content)
                except OSError as exc:
                    raise WriteError(f"write failed for {path}: {exc}", backup=backup) from exc
                written = backup
        except KeyboardInterrupt as exc:
            if written is None:
                raise
            logger.info("Updated %s (backup: %s)", path, written.backup_path, extra={"critical": critical})
            raise WriteInterrupted(f"interrupted after updating {path}", backup=written) from exc
        logger.info("Updated %s (backup: %s)", path, backup.backup_path, extra={"critical": critical})
        return backup
