"""
Shared fixtures and fakes for the mailbox permission audit tests.
"""
import os
import sys
from datetime import datetime, timezone

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mailbox_audit.models import PermissionRecord
from mailbox_audit.snapshot.store import SnapshotStore


# =============================================================================
# Helper Functions
# =============================================================================

def rec(mailbox, grantee, rights="FullAccess", folder=""):
    """Shorthand PermissionRecord factory."""
    return PermissionRecord(mailbox=mailbox, folder_path=folder, grantee=grantee, access_rights=rights)


def mailbox_entry(user, rights=("FullAccess",), inherited=False, deny=False):
    """Raw Get-MailboxPermission object as returned by the admin API."""
    return {
        "User": user,
        "AccessRights": list(rights),
        "IsInherited": inherited,
        "Deny": deny,
    }


def folder_entry(user, rights=("Reviewer",)):
    """Raw Get-MailboxFolderPermission object as returned by the admin API."""
    return {
        "User": {"DisplayName": user},
        "AccessRights": list(rights),
    }


class FakeExchange:
    """
    Stands in for ExchangeClient.
    responses maps (cmdlet, identity) -> list of objects; Get-Mailbox is
    keyed by (cmdlet, None).
    """

    def __init__(self, responses=None, fail_on=None):
        self.responses = responses or {}
        self.fail_on = fail_on
        self.calls = []

    async def invoke(self, cmdlet, parameters=None):
        return [item async for item in self.invoke_stream(cmdlet, parameters)]

    async def invoke_stream(self, cmdlet, parameters=None):
        parameters = parameters or {}
        self.calls.append((cmdlet, dict(parameters)))
        identity = parameters.get("Identity")
        if self.fail_on and self.fail_on == (cmdlet, identity):
            from mailbox_audit.exchange.client import ExchangeAPIError
            raise ExchangeAPIError(500, "simulated failure", "https://outlook.office365.com/adminapi")
        for item in self.responses.get((cmdlet, identity), []):
            yield item


class FakeResolver:
    """Stands in for IdentityResolver; records every lookup."""

    def __init__(self, known=None):
        self.known = known or {}
        self.calls = []

    async def resolve(self, identifier, is_sid):
        self.calls.append((identifier, is_sid))
        return self.known.get(identifier, identifier)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store(tmp_path):
    """A snapshot store rooted in a temporary directory."""
    return SnapshotStore(tmp_path / "MailboxPermissions")


@pytest.fixture
def snapshot_time():
    """A fixed snapshot timestamp."""
    return datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)
