"""
Scan planner: picks one of the scan modes from the operator's flags and
the snapshot files found on disk, and derives the mailbox filter for it.

plan_scan() is a pure function of (ScanOptions, ArtifactProbe); the probe
is taken once by SnapshotStore.probe() before planning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .config import DELTA_LOOKBACK_HOURS, ScanConfig
from .models import MailboxFilter
from .snapshot.store import ArtifactProbe

logger = logging.getLogger("mailbox_audit.planner")


class PreconditionError(Exception):
    """Raised when the requested mode needs files that are not there."""
    pass


class ScanMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    RESUME_RESUME = "resume-resume"            # a resume run was interrupted
    RESUME_INCREMENTAL = "resume-incremental"  # an incremental run was interrupted
    RESUME_FULL = "resume-full"                # a full run was interrupted


class Artifact(str, Enum):
    SNAPSHOT = "snapshot"
    DELTA = "delta"
    RESUME = "resume"


@dataclass(frozen=True)
class ScanOptions:
    only_changed: bool = False
    resume: bool = False
    use_modified_time: bool = False
    include_folders: bool = False
    result_size: Optional[int] = None

    @classmethod
    def from_config(cls, scan: ScanConfig) -> "ScanOptions":
        return cls(
            only_changed=scan.only_changed,
            resume=scan.resume,
            use_modified_time=scan.use_modified_time,
            include_folders=scan.include_folders,
            result_size=scan.result_size,
        )


@dataclass(frozen=True)
class ScanPlan:
    """
    What a run does:
      - query mailboxes matching mailbox_filter (capped at result_size)
      - delete the discard files, optionally truncate output to a header
      - append results to output
      - merge merge_layers (newest first) into the snapshot, or just
        re-sort the snapshot when merge_layers is empty
    """
    mode: ScanMode
    mailbox_filter: MailboxFilter
    output: Artifact
    merge_layers: tuple[Artifact, ...] = ()
    discard: tuple[Artifact, ...] = ()
    reset_output: bool = False
    include_folders: bool = False
    result_size: Optional[int] = None
    date_for_delta: Optional[datetime] = None
    continuation_key: Optional[str] = None


def compute_date_for_delta(probe: ArtifactProbe, use_modified_time: bool = False) -> datetime:
    """
    Snapshot creation time, or its modified time when it was modified after
    creation (or when forced), minus the lookback window.
    """
    if probe.snapshot_created is None or probe.snapshot_modified is None:
        raise PreconditionError("Snapshot timestamps are unavailable")
    reference = probe.snapshot_created
    if use_modified_time or probe.snapshot_modified > probe.snapshot_created:
        reference = probe.snapshot_modified
    return reference - timedelta(hours=DELTA_LOOKBACK_HOURS)


def _require_snapshot(probe: ArtifactProbe, mode: str):
    if not probe.snapshot_exists:
        raise PreconditionError(
            f"{mode} needs an existing snapshot; run a full scan first"
        )


def plan_scan(options: ScanOptions, probe: ArtifactProbe) -> ScanPlan:
    if options.resume:
        return _plan_resume(options, probe)

    if options.only_changed:
        _require_snapshot(probe, "An incremental scan")
        date_for_delta = compute_date_for_delta(probe, options.use_modified_time)
        return ScanPlan(
            mode=ScanMode.INCREMENTAL,
            mailbox_filter=MailboxFilter(changed_after=date_for_delta),
            output=Artifact.DELTA,
            merge_layers=(Artifact.DELTA,),
            discard=(Artifact.RESUME,),
            reset_output=True,
            include_folders=options.include_folders,
            result_size=options.result_size,
            date_for_delta=date_for_delta,
        )

    return ScanPlan(
        mode=ScanMode.FULL,
        mailbox_filter=MailboxFilter(),
        output=Artifact.SNAPSHOT,
        discard=(Artifact.DELTA, Artifact.RESUME),
        reset_output=True,
        include_folders=options.include_folders,
        result_size=options.result_size,
    )


def _plan_resume(options: ScanOptions, probe: ArtifactProbe) -> ScanPlan:
    _require_snapshot(probe, "Resuming")

    if probe.resume_exists:
        key = (
            probe.resume_last_mailbox
            or probe.delta_last_mailbox
            or probe.snapshot_last_mailbox
        )
        had_folders = probe.resume_has_folders or probe.delta_has_folders
        layers = (Artifact.RESUME, Artifact.DELTA) if probe.delta_exists else (Artifact.RESUME,)
        mode = ScanMode.RESUME_RESUME
    elif probe.delta_exists:
        key = probe.delta_last_mailbox
        had_folders = probe.delta_has_folders
        layers = (Artifact.RESUME, Artifact.DELTA)
        mode = ScanMode.RESUME_INCREMENTAL
    else:
        key = probe.snapshot_last_mailbox
        include_folders = options.include_folders or probe.snapshot_has_folders
        logger.info(f"Resuming full scan after {key!r}")
        return ScanPlan(
            mode=ScanMode.RESUME_FULL,
            mailbox_filter=MailboxFilter(name_greater_than=key),
            output=Artifact.SNAPSHOT,
            include_folders=include_folders,
            result_size=options.result_size,
            continuation_key=key,
        )

    date_for_delta = compute_date_for_delta(probe, options.use_modified_time)
    include_folders = options.include_folders or had_folders
    if not include_folders:
        logger.info("Resumed file has no folder rows; folder permissions skipped")
    logger.info(f"Resuming ({mode.value}) after {key!r}, changed since {date_for_delta}")
    return ScanPlan(
        mode=mode,
        mailbox_filter=MailboxFilter(name_greater_than=key, changed_after=date_for_delta),
        output=Artifact.RESUME,
        merge_layers=layers,
        include_folders=include_folders,
        result_size=options.result_size,
        date_for_delta=date_for_delta,
        continuation_key=key,
    )
