"""
Mailbox Permission Audit
========================
Enumerates mailbox-level and folder-level permissions across an Exchange
Online tenant and keeps them in a CSV snapshot that supports full,
incremental, and resumable scans.

WARNING: This tool operates in STRICT READ-ONLY mode.
         No write operations will be performed against the tenant.
"""

__version__ = "1.0.0"
__author__ = "Mailbox Permission Audit"
__mode__ = "READ-ONLY"
