"""
Tests for snapshot reconciliation.

Covers:
- merging an empty set is a no-op
- mailbox-granular overwrite
- ordering by mailbox, mailbox-level before folder-level
- scanned-but-empty mailboxes
"""
from mailbox_audit.snapshot.merge import reconcile, sort_records, touched_mailboxes

from conftest import rec


# =============================================================================
# reconcile Tests
# =============================================================================

class TestReconcile:
    """Tests for reconcile()."""

    def test_empty_new_keeps_old(self):
        """Merging nothing returns the old rows."""
        old = [rec("M2", "Bob", "SendAs"), rec("M1", "Alice")]

        result = reconcile([], old)

        assert sorted(result, key=lambda r: r.mailbox) == sorted(old, key=lambda r: r.mailbox)

    def test_scenario_replace_touched_mailbox(self):
        """New grant on M1 replaces M1's old grant; M2 survives."""
        old = [rec("M1", "Alice", "FullAccess"), rec("M2", "Bob", "SendAs")]
        new = [rec("M1", "Carol", "FullAccess")]

        result = reconcile(new, old)

        assert result == [rec("M1", "Carol", "FullAccess"), rec("M2", "Bob", "SendAs")]

    def test_touched_mailbox_loses_folder_rows(self):
        """A mailbox-level-only rescan still drops the mailbox's old folder rows."""
        old = [
            rec("M1", "Alice"),
            rec("M1", "Dave", "Reviewer", folder="/Inbox"),
            rec("M2", "Bob"),
        ]
        new = [rec("M1", "Alice")]

        result = reconcile(new, old)

        assert rec("M1", "Dave", "Reviewer", folder="/Inbox") not in result
        assert result == [rec("M1", "Alice"), rec("M2", "Bob")]

    def test_untouched_mailboxes_preserved_exactly(self):
        """Every old row of an untouched mailbox is kept unchanged."""
        old = [
            rec("M3", "Eve", folder="/Calendar", rights="Editor"),
            rec("M3", "Eve"),
            rec("M4", "Frank"),
        ]
        new = [rec("M1", "Carol")]

        result = reconcile(new, old)

        for row in old:
            assert row in result
        assert not [r for r in result if r.mailbox == "M1" and r.grantee != "Carol"]

    def test_also_touched_clears_empty_mailbox(self):
        """A mailbox scanned with no surviving grants ends up with no rows."""
        old = [rec("M1", "Alice"), rec("M2", "Bob")]

        result = reconcile([], old, also_touched={"M1"})

        assert result == [rec("M2", "Bob")]

    def test_touched_mailboxes(self):
        """touched_mailboxes returns each distinct mailbox once."""
        rows = [rec("M1", "A"), rec("M1", "B", folder="/Inbox"), rec("M2", "C")]
        assert touched_mailboxes(rows) == {"M1", "M2"}


# =============================================================================
# sort_records Tests
# =============================================================================

class TestSortRecords:
    """Tests for snapshot ordering."""

    def test_sorted_by_mailbox(self):
        rows = [rec("M3", "A"), rec("M1", "B"), rec("M2", "C")]
        assert [r.mailbox for r in sort_records(rows)] == ["M1", "M2", "M3"]

    def test_mailbox_level_before_folder_level(self):
        """Mailbox-level rows precede folder rows; folder rows keep their order."""
        rows = [
            rec("M1", "X", folder="/Sent Items"),
            rec("M1", "Y", folder="/Inbox"),
            rec("M1", "Z"),
        ]

        result = sort_records(rows)

        assert result[0] == rec("M1", "Z")
        assert [r.folder_path for r in result[1:]] == ["/Sent Items", "/Inbox"]

    def test_case_insensitive_mailbox_order(self):
        rows = [rec("bravo", "A"), rec("Alpha", "B"), rec("Charlie", "C")]
        assert [r.mailbox for r in sort_records(rows)] == ["Alpha", "bravo", "Charlie"]
