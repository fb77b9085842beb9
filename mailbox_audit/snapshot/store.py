"""
CSV snapshot store.

Three files share one base path:
  <base>.csv       canonical snapshot
  <base>-NEW.csv   rows found by an incremental scan, not yet merged
  <base>-TEMP.csv  rows found by a resume run, written append-only

The snapshot is only ever replaced wholesale, through an atomic rename.
"""

from __future__ import annotations

import csv
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..models import CSV_FIELDS, PermissionRecord
from .merge import reconcile, sort_records

logger = logging.getLogger("mailbox_audit.snapshot")

CSV_ENCODING = "utf-8-sig"
DELTA_SUFFIX = "-NEW"
RESUME_SUFFIX = "-TEMP"
LOCK_SUFFIX = ".lock"


class SnapshotLockedError(Exception):
    """Raised when another run holds the lock for the same snapshot."""
    pass


@dataclass(frozen=True)
class ArtifactProbe:
    """Which snapshot files exist, taken once at the start of a run."""
    snapshot_exists: bool = False
    delta_exists: bool = False
    resume_exists: bool = False
    snapshot_created: Optional[datetime] = None
    snapshot_modified: Optional[datetime] = None
    snapshot_last_mailbox: Optional[str] = None
    delta_last_mailbox: Optional[str] = None
    resume_last_mailbox: Optional[str] = None
    delta_has_folders: bool = False
    resume_has_folders: bool = False
    snapshot_has_folders: bool = False


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True


def base_from_output(output: str | os.PathLike) -> Path:
    """Strip a trailing .csv so "perms.csv" and "perms" name the same base."""
    path = Path(output)
    if path.suffix.lower() == ".csv":
        path = path.with_suffix("")
    return path


class SnapshotStore:
    """Reads, appends, rewrites, and merges the snapshot files of one base path."""

    def __init__(self, output: str | os.PathLike):
        self.base = base_from_output(output)

    # ── Paths ────────────────────────────────────────────────────────────────

    def _with_suffix(self, suffix: str) -> Path:
        return self.base.with_name(self.base.name + suffix)

    @property
    def snapshot_path(self) -> Path:
        return self._with_suffix(".csv")

    @property
    def delta_path(self) -> Path:
        return self._with_suffix(f"{DELTA_SUFFIX}.csv")

    @property
    def resume_path(self) -> Path:
        return self._with_suffix(f"{RESUME_SUFFIX}.csv")

    @property
    def lock_path(self) -> Path:
        return self._with_suffix(LOCK_SUFFIX)

    # ── Primitives ───────────────────────────────────────────────────────────

    @staticmethod
    def iter_records(path: Path) -> Iterator[PermissionRecord]:
        if not path.exists():
            return
        with open(path, "r", newline="", encoding=CSV_ENCODING) as fh:
            for row in csv.DictReader(fh):
                if row.get("Mailbox"):
                    yield PermissionRecord.from_row(row)

    def load(self, path: Path) -> list[PermissionRecord]:
        """All records of a file; a missing or empty file loads as []."""
        return list(self.iter_records(path))

    def append_stream(self, path: Path, records: Iterable[PermissionRecord]) -> int:
        """Append rows without touching earlier content. Returns rows written."""
        path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not path.exists() or path.stat().st_size == 0
        count = 0
        with open(path, "a", newline="", encoding=CSV_ENCODING) as fh:
            writer = csv.DictWriter(fh, fieldnames=CSV_FIELDS)
            if new_file:
                writer.writeheader()
            for record in records:
                writer.writerow(record.to_row())
                count += 1
            fh.flush()
        return count

    def write_full(self, path: Path, records: Iterable[PermissionRecord]) -> int:
        """Atomically replace a file with exactly these records, sorted by mailbox."""
        ordered = sort_records(records)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        try:
            with os.fdopen(fd, "w", newline="", encoding=CSV_ENCODING) as fh:
                writer = csv.DictWriter(fh, fieldnames=CSV_FIELDS)
                writer.writeheader()
                for record in ordered:
                    writer.writerow(record.to_row())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return len(ordered)

    def delete(self, path: Path) -> bool:
        """Remove a file if present. Returns True if something was removed."""
        if path.exists():
            path.unlink()
            logger.debug(f"Removed {path}")
            return True
        return False

    def last_mailbox(self, path: Path) -> Optional[str]:
        """Mailbox of the last record in a file, the continuation key."""
        last = None
        for record in self.iter_records(path):
            last = record.mailbox
        return last

    def has_folder_records(self, path: Path) -> bool:
        return any(r.is_folder_level for r in self.iter_records(path))

    @staticmethod
    def timestamps(path: Path) -> tuple[datetime, datetime]:
        """(created, modified) in UTC. Falls back to st_ctime without birth time."""
        st = path.stat()
        created = getattr(st, "st_birthtime", None) or st.st_ctime
        return (
            datetime.fromtimestamp(created, tz=timezone.utc),
            datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    # ── State probe ──────────────────────────────────────────────────────────

    def probe(self) -> ArtifactProbe:
        snapshot_exists = self.snapshot_path.exists()
        delta_exists = self.delta_path.exists()
        resume_exists = self.resume_path.exists()

        created = modified = None
        if snapshot_exists:
            created, modified = self.timestamps(self.snapshot_path)

        return ArtifactProbe(
            snapshot_exists=snapshot_exists,
            delta_exists=delta_exists,
            resume_exists=resume_exists,
            snapshot_created=created,
            snapshot_modified=modified,
            snapshot_last_mailbox=self.last_mailbox(self.snapshot_path) if snapshot_exists else None,
            delta_last_mailbox=self.last_mailbox(self.delta_path) if delta_exists else None,
            resume_last_mailbox=self.last_mailbox(self.resume_path) if resume_exists else None,
            snapshot_has_folders=snapshot_exists and self.has_folder_records(self.snapshot_path),
            delta_has_folders=delta_exists and self.has_folder_records(self.delta_path),
            resume_has_folders=resume_exists and self.has_folder_records(self.resume_path),
        )

    # ── Merge ────────────────────────────────────────────────────────────────

    def merge(
        self,
        layers: list[Path],
        target: Optional[Path] = None,
        scanned: Iterable[str] = (),
    ) -> int:
        """
        Fold newer layers over older ones (layers newest first, then the
        target's current content), write the target, and delete the layers.
        Mailboxes in scanned count as touched even when they produced no rows.
        Returns the number of rows in the rewritten target.
        """
        target = target or self.snapshot_path
        scanned = set(scanned)
        stack = [self.load(layer) for layer in layers if layer != target]
        stack.append(self.load(target))

        result = stack[0]
        for older in stack[1:]:
            result = reconcile(result, older, also_touched=scanned)

        count = self.write_full(target, result)
        for layer in layers:
            if layer != target:
                self.delete(layer)
        logger.info(f"Merged {len(layers)} file(s) into {target}: {count} rows")
        return count

    # ── Run lock ─────────────────────────────────────────────────────────────

    def _create_lock(self) -> int:
        return os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)

    def _lock_holder(self) -> Optional[int]:
        """PID recorded in the lock file, or None if it cannot be read."""
        try:
            return int(self.lock_path.read_text().strip())
        except (OSError, ValueError):
            return None

    @contextmanager
    def lock(self):
        """Hold <base>.lock for the duration of a run."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = self._create_lock()
        except FileExistsError:
            holder = self._lock_holder()
            if holder is None or _pid_alive(holder):
                raise SnapshotLockedError(
                    f"{self.lock_path} exists; another run (pid {holder or 'unknown'}) "
                    f"is using {self.snapshot_path}. Remove the lock file if no run is active."
                ) from None
            logger.warning(f"Taking over stale lock {self.lock_path} left by pid {holder}")
            self.lock_path.unlink(missing_ok=True)
            try:
                fd = self._create_lock()
            except FileExistsError:
                raise SnapshotLockedError(
                    f"{self.lock_path} was taken by another run"
                ) from None
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(f"{os.getpid()}\n")
            yield self
        finally:
            self.lock_path.unlink(missing_ok=True)
