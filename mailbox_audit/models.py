"""
Core data model: permission rows, mailbox filters, and the run summary.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional


# Column order of every snapshot file
CSV_FIELDS = ["Mailbox", "FolderPath", "UserGivenAccess", "AccessRights"]

# OPATH date literal format accepted by the Exchange -Filter parameter
OPATH_DATE_FORMAT = "%m/%d/%Y %H:%M:%S"


@dataclass(frozen=True)
class PermissionRecord:
    """
    One access-control entry.
    An empty folder_path is a mailbox-level grant, anything else is a grant
    on that folder of the mailbox.
    """
    mailbox: str
    folder_path: str
    grantee: str
    access_rights: str

    @property
    def is_folder_level(self) -> bool:
        return bool(self.folder_path)

    def to_row(self) -> dict:
        return {
            "Mailbox": self.mailbox,
            "FolderPath": self.folder_path,
            "UserGivenAccess": self.grantee,
            "AccessRights": self.access_rights,
        }

    @classmethod
    def from_row(cls, row: dict) -> "PermissionRecord":
        return cls(
            mailbox=row.get("Mailbox") or "",
            folder_path=row.get("FolderPath") or "",
            grantee=row.get("UserGivenAccess") or "",
            access_rights=row.get("AccessRights") or "",
        )


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class MailboxFilter:
    """
    Server-side mailbox selection.

    - neither field set: every mailbox (full scan)
    - changed_after only: incremental scan
    - name_greater_than (+ changed_after): continuation of an interrupted scan
    """
    name_greater_than: Optional[str] = None
    changed_after: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.name_greater_than is None and self.changed_after is None

    def to_opath(self) -> Optional[str]:
        """Render as an Exchange OPATH filter, or None for no filter."""
        clauses = []
        if self.name_greater_than is not None:
            clauses.append(f"(Name -gt {_quote(self.name_greater_than)})")
        if self.changed_after is not None:
            stamp = self.changed_after.strftime(OPATH_DATE_FORMAT)
            clauses.append(f"(WhenChanged -gt {_quote(stamp)})")
        if not clauses:
            return None
        return " -and ".join(clauses)


@dataclass
class RunSummary:
    """Counters and timing reported at the end of a run."""
    mode: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    mailboxes_processed: int = 0
    records_written: int = 0
    records_in_snapshot: int = 0
    date_for_delta: Optional[datetime] = None
    continuation_key: Optional[str] = None
    include_folders: bool = False
    removed_files: list[str] = field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return round((self.completed_at - self.started_at).total_seconds(), 2)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["elapsed_seconds"] = self.elapsed_seconds
        for key in ("started_at", "completed_at", "date_for_delta"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
