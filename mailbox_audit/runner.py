"""
Scan runner: executes a ScanPlan against the permission source and the
snapshot store.

On success every transient file is merged and removed. If a query fails the
exception propagates and the partially written files stay on disk so the
next run can pass --resume.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from .collectors.mailbox_permissions import MailboxPermissionSource
from .models import RunSummary
from .planner import Artifact, ScanPlan
from .snapshot.store import SnapshotStore

logger = logging.getLogger("mailbox_audit.runner")

PROGRESS_EVERY = 100  # mailboxes between progress log lines


def artifact_path(store: SnapshotStore, artifact: Artifact):
    return {
        Artifact.SNAPSHOT: store.snapshot_path,
        Artifact.DELTA: store.delta_path,
        Artifact.RESUME: store.resume_path,
    }[artifact]


async def run_scan(
    plan: ScanPlan,
    source: MailboxPermissionSource,
    store: SnapshotStore,
) -> RunSummary:
    summary = RunSummary(
        mode=plan.mode.value,
        started_at=datetime.now(timezone.utc),
        date_for_delta=plan.date_for_delta,
        continuation_key=plan.continuation_key,
        include_folders=plan.include_folders,
    )
    output = artifact_path(store, plan.output)

    # Phase one: the mailbox list. Nothing on disk changes until it succeeds.
    mailboxes = await source.fetch_mailboxes(plan.mailbox_filter, plan.result_size)
    summary.mailboxes_processed = len(mailboxes)

    for artifact in plan.discard:
        path = artifact_path(store, artifact)
        if store.delete(path):
            logger.warning(f"Discarded leftover {artifact.value} file {path}")
            summary.removed_files.append(str(path))

    if plan.reset_output:
        store.write_full(output, [])

    # Phase two: permissions, one mailbox at a time, appended as they arrive
    done = 0
    async for mailbox, records in source.iter_permissions(mailboxes, plan.include_folders):
        summary.records_written += store.append_stream(output, records)
        done += 1
        if done % PROGRESS_EVERY == 0:
            logger.info(f"{done}/{len(mailboxes)} mailboxes processed (last: {mailbox})")

    if plan.merge_layers:
        layers = [artifact_path(store, a) for a in plan.merge_layers]
        summary.records_in_snapshot = store.merge(
            layers, store.snapshot_path, scanned=mailboxes
        )
        summary.removed_files.extend(str(p) for p in layers if p != store.snapshot_path)
    else:
        snapshot = store.snapshot_path
        summary.records_in_snapshot = store.write_full(snapshot, store.load(snapshot))

    summary.completed_at = datetime.now(timezone.utc)
    logger.info(
        f"{plan.mode.value} scan finished: {summary.mailboxes_processed} mailboxes, "
        f"{summary.records_written} new rows, {summary.records_in_snapshot} rows in snapshot"
    )
    logger.debug(f"Run summary: {summary.to_dict()}")
    return summary
