"""
Safety Guardian: Enforces strict read-only operation.
Validates HTTP methods and Exchange cmdlet names, blocks write attempts,
and logs safety events.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("mailbox_audit.safety")

# ─── Blocked HTTP Methods ────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Exchange admin API tunnels every cmdlet through POST .../InvokeCommand
INVOKE_COMMAND_ENDPOINT = re.compile(r"/adminapi/[^/]+/[^/]+/InvokeCommand$", re.IGNORECASE)

# Cmdlets the audit is allowed to run
ALLOWED_CMDLETS = {
    "Get-Mailbox",
    "Get-MailboxPermission",
    "Get-MailboxFolderStatistics",
    "Get-MailboxFolderPermission",
}

# Verbs that never appear in a read-only session
BLOCKED_CMDLET_VERBS = re.compile(
    r"^(Add|Set|Remove|New|Enable|Disable|Update|Start|Stop|Clear|Import|Export)-",
    re.IGNORECASE,
)


class SafetyViolation(Exception):
    """Raised when a write operation is attempted."""
    pass


class SafetyGuardian:
    """
    Validates every outbound HTTP request to ensure read-only operation.
    Maintains an audit log of all safety checks and violations.
    """

    def __init__(self):
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate that a request is read-only.
        Returns True if safe, raises SafetyViolation if not.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper in ("GET", "HEAD", "OPTIONS"):
            return True

        # POST is allowed only for InvokeCommand with an allow-listed cmdlet
        if method_upper == "POST" and INVOKE_COMMAND_ENDPOINT.search(url.split("?")[0]):
            cmdlet = ((body or {}).get("CmdletInput") or {}).get("CmdletName", "")
            if cmdlet in ALLOWED_CMDLETS:
                return True
            reason = (
                "Write cmdlet blocked" if BLOCKED_CMDLET_VERBS.match(cmdlet)
                else "Cmdlet not on the read-only allow list"
            )
            self._record_violation(method_upper, url, f"{reason}: {cmdlet or '<none>'}")
            raise SafetyViolation(f"SAFETY VIOLATION: {reason}: {cmdlet or '<none>'}")

        if method_upper in WRITE_METHODS:
            self._record_violation(method_upper, url, "Write HTTP method blocked")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Write method blocked: {method_upper} {url}"
            )

        return True

    def _record_violation(self, method: str, url: str, reason: str):
        """Record a safety violation for audit."""
        violation = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "url": url,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.critical(f"SAFETY VIOLATION: {reason}: {method} {url}")

    def get_audit_record(self) -> dict:
        """Return the full safety audit record."""
        return {
            "safety_guardian": {
                "mode": "READ-ONLY",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }

    @staticmethod
    def print_banner():
        """Print the read-only warning banner."""
        print("=" * 75)
        print("  READ-ONLY MAILBOX PERMISSION AUDIT -- NO CHANGES WILL BE MADE")
        print("  * Only Get-* cmdlets and GET requests are issued")
        print("  * No mailbox or folder permissions will be modified")
        print("  * Safety Guardian enforces read-only at the HTTP layer")
        print("=" * 75)
