from .mailbox_permissions import MailboxPermissionSource
from .filters import include_folder_entry, include_mailbox_entry

__all__ = [
    "MailboxPermissionSource",
    "include_mailbox_entry",
    "include_folder_entry",
]
