"""
Snapshot reconciliation.

Merging is mailbox-granular: any mailbox that appears in the newer set
replaces every older row for that mailbox, mailbox-level and folder-level
alike. A mailbox the newer scan did not touch keeps its older rows as-is,
so folder grants removed from an otherwise unchanged mailbox are not
noticed until the next full scan.
"""

from __future__ import annotations

from typing import Iterable

from ..models import PermissionRecord


def record_sort_key(record: PermissionRecord) -> tuple[str, bool]:
    # mailbox-level rows (empty folder path) first within a mailbox
    return record.mailbox.casefold(), record.is_folder_level


def sort_records(records: Iterable[PermissionRecord]) -> list[PermissionRecord]:
    """Stable sort by mailbox; folder rows keep their relative order."""
    return sorted(records, key=record_sort_key)


def touched_mailboxes(records: Iterable[PermissionRecord]) -> set[str]:
    return {r.mailbox for r in records}


def reconcile(
    new: list[PermissionRecord],
    old: list[PermissionRecord],
    also_touched: Iterable[str] = (),
) -> list[PermissionRecord]:
    """
    Return new plus every old row whose mailbox new did not touch, sorted.
    also_touched names mailboxes that were scanned but produced no rows.
    """
    touched = touched_mailboxes(new) | set(also_touched)
    kept = [r for r in old if r.mailbox not in touched]
    return sort_records(list(new) + kept)
