"""
Mailbox Permission Collector
Enumerates mailboxes matching a filter, then their mailbox-level grants
(Get-MailboxPermission) and optionally folder-level grants
(Get-MailboxFolderStatistics + Get-MailboxFolderPermission).

Remote errors are not caught here; an interrupted run is recovered by
resuming from the last mailbox written to disk.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

from ..exchange.client import ExchangeClient
from ..identity.resolver import Resolver, is_sid_shaped
from ..models import MailboxFilter, PermissionRecord
from .filters import (
    entry_user,
    include_folder_entry,
    include_mailbox_entry,
    is_self_grant,
    join_rights,
)

logger = logging.getLogger("mailbox_audit.collectors.mailbox_permissions")

# Folder subtrees that never carry user-assigned permissions
SKIPPED_FOLDER_ROOTS = ("/Recoverable Items",)

# Exchange substitutes this private-use char for "/" inside folder names
FOLDER_SLASH_PLACEHOLDER = "\uf8ff"


def mailbox_sort_key(name: str) -> str:
    """Exchange compares names case-insensitively for Name -gt."""
    return name.casefold()


def folder_identity(mailbox: str, folder_path: str) -> str:
    """Build the "<mailbox>:\\Inbox\\Sub" identity from a "/Inbox/Sub" path."""
    parts = [p.replace(FOLDER_SLASH_PLACEHOLDER, "/") for p in folder_path.strip("/").split("/") if p]
    if parts and parts[0] == "Top of Information Store":
        parts = parts[1:]
    return f"{mailbox}:\\" + "\\".join(parts)


class MailboxPermissionSource:
    """
    Yields PermissionRecords for a tenant's mailboxes.

    Exclusions: inherited and deny entries, NT AUTHORITY\\SELF, grants to the
    mailbox's own address, and folder entries whose rights are "None".
    Mailbox-level grantees are resolved only when they are SIDs; folder-level
    grantees are always resolved (by SID or by display name).
    """

    def __init__(self, exchange: ExchangeClient, resolver: Resolver, email_domain: str = ""):
        self.exchange = exchange
        self.resolver = resolver
        self.email_domain = email_domain
        self.mailboxes_listed = 0

    # ── Phase one: mailbox list ──────────────────────────────────────────────

    async def fetch_mailboxes(
        self,
        mailbox_filter: MailboxFilter,
        result_size: Optional[int] = None,
    ) -> list[str]:
        """Materialize mailbox names matching the filter, sorted for the cursor."""
        parameters: dict[str, Any] = {
            "ResultSize": result_size if result_size else "Unlimited",
            "Filter": mailbox_filter.to_opath(),
        }
        names = []
        async for mailbox in self.exchange.invoke_stream("Get-Mailbox", parameters):
            name = mailbox.get("Name") or mailbox.get("Identity")
            if name:
                names.append(name)

        names.sort(key=mailbox_sort_key)
        self.mailboxes_listed += len(names)
        logger.info(
            f"{len(names)} mailboxes matched filter {mailbox_filter.to_opath() or '<none>'}"
        )
        return names

    # ── Phase two: permissions ───────────────────────────────────────────────

    async def mailbox_permissions(self, mailbox: str) -> list[PermissionRecord]:
        """Mailbox-level grants for one mailbox."""
        records = []
        entries = await self.exchange.invoke("Get-MailboxPermission", {"Identity": mailbox})
        for entry in entries:
            if not include_mailbox_entry(entry, mailbox, self.email_domain):
                continue
            raw = entry_user(entry)
            grantee = await self.resolver.resolve(raw, True) if is_sid_shaped(raw) else raw
            if is_self_grant(mailbox, grantee, self.email_domain):
                continue
            records.append(PermissionRecord(
                mailbox=mailbox,
                folder_path="",
                grantee=grantee,
                access_rights=join_rights(entry.get("AccessRights")),
            ))
        return records

    async def folder_permissions(self, mailbox: str) -> list[PermissionRecord]:
        """Folder-level grants for every folder of one mailbox."""
        records = []
        folders = await self.exchange.invoke(
            "Get-MailboxFolderStatistics", {"Identity": mailbox}
        )
        for folder in folders:
            folder_path = folder.get("FolderPath") or ""
            if not folder_path or folder_path.startswith(SKIPPED_FOLDER_ROOTS):
                continue
            entries = await self.exchange.invoke(
                "Get-MailboxFolderPermission",
                {"Identity": folder_identity(mailbox, folder_path)},
            )
            for entry in entries:
                if not include_folder_entry(entry, mailbox, self.email_domain):
                    continue
                raw = entry_user(entry)
                grantee = await self.resolver.resolve(raw, is_sid_shaped(raw))
                if is_self_grant(mailbox, grantee, self.email_domain):
                    continue
                records.append(PermissionRecord(
                    mailbox=mailbox,
                    folder_path=folder_path,
                    grantee=grantee,
                    access_rights=join_rights(entry.get("AccessRights")),
                ))
        return records

    async def fetch_mailbox_permissions(
        self,
        mailbox_filter: MailboxFilter,
        result_size: Optional[int] = None,
    ) -> tuple[list[str], list[PermissionRecord]]:
        mailboxes = await self.fetch_mailboxes(mailbox_filter, result_size)
        records = []
        for mailbox in mailboxes:
            records.extend(await self.mailbox_permissions(mailbox))
        return mailboxes, records

    async def fetch_folder_permissions(self, mailboxes: list[str]) -> list[PermissionRecord]:
        records = []
        for mailbox in mailboxes:
            records.extend(await self.folder_permissions(mailbox))
        return records

    async def iter_permissions(
        self,
        mailboxes: list[str],
        include_folders: bool = False,
    ) -> AsyncGenerator[tuple[str, list[PermissionRecord]], Any]:
        """
        Stream one mailbox at a time so the caller can persist each batch
        before the next query starts.
        """
        for mailbox in mailboxes:
            records = await self.mailbox_permissions(mailbox)
            if include_folders:
                records.extend(await self.folder_permissions(mailbox))
            yield mailbox, records
