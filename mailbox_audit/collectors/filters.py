"""
Exclusion rules for raw permission entries returned by Exchange.
"""

from __future__ import annotations

from typing import Any

# Built-in principal Exchange uses for a mailbox's own access
SELF_PRINCIPAL = "NT AUTHORITY\\SELF"

NO_RIGHTS = "None"


def join_rights(rights: Any) -> str:
    """AccessRights comes back as a list of right names or a single string."""
    if rights is None:
        return ""
    if isinstance(rights, str):
        return rights
    return ",".join(str(r) for r in rights)


def entry_user(entry: dict) -> str:
    """The grantee of an entry; folder entries nest it under User.DisplayName."""
    user = entry.get("User")
    if isinstance(user, dict):
        return user.get("DisplayName") or user.get("Name") or ""
    return str(user or "")


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def is_self_reference(grantee: str) -> bool:
    return grantee.upper() == SELF_PRINCIPAL


def is_self_grant(mailbox: str, grantee: str, email_domain: str) -> bool:
    """True when the grantee is the mailbox's own address."""
    if not email_domain:
        return False
    return grantee.lower() == f"{mailbox}{email_domain}".lower()


def include_mailbox_entry(entry: dict, mailbox: str, email_domain: str) -> bool:
    if _is_truthy(entry.get("IsInherited")):
        return False
    if _is_truthy(entry.get("Deny")):
        return False
    grantee = entry_user(entry)
    if is_self_reference(grantee) or is_self_grant(mailbox, grantee, email_domain):
        return False
    return True


def include_folder_entry(entry: dict, mailbox: str, email_domain: str) -> bool:
    if join_rights(entry.get("AccessRights")) == NO_RIGHTS:
        return False
    grantee = entry_user(entry)
    if is_self_reference(grantee) or is_self_grant(mailbox, grantee, email_domain):
        return False
    return True
