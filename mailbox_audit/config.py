"""
Configuration module for the Mailbox Permission Audit.
Defines tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str

@dataclass
class AuthConfig:
    """Authentication configuration: supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Remote Service Settings ────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

EXCHANGE_BASE_URL = "https://outlook.office365.com"
EXCHANGE_ADMIN_API = "adminapi/beta"
EXCHANGE_SCOPE = "https://outlook.office365.com/.default"

# Rate limiting / throttling
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor
REQUEST_TIMEOUT_SECONDS = 300.0   # Get-Mailbox on large tenants is slow

# Pagination
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops


# ─── Scan Settings ──────────────────────────────────────────────────────────

DEFAULT_OUTPUT_BASE = "MailboxPermissions"
DELTA_LOOKBACK_HOURS = 24         # Overlap subtracted from the snapshot time

@dataclass
class ScanConfig:
    """Controls for a single scan run."""
    output_base: str = DEFAULT_OUTPUT_BASE
    organization: str = ""                # e.g. contoso.onmicrosoft.com
    email_domain: str = ""                # e.g. @contoso.com, used for self-grants
    result_size: Optional[int] = None     # None = Unlimited
    only_changed: bool = False            # Incremental scan
    resume: bool = False                  # Continue an interrupted run
    use_modified_time: bool = False       # Seed the delta date from mtime
    include_folders: bool = False         # Also collect folder permissions

    def __post_init__(self):
        if self.email_domain and not self.email_domain.startswith("@"):
            self.email_domain = "@" + self.email_domain


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class EngineConfig:
    """Top-level configuration for the audit."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    verbose: bool = False
    log_file: str = ""

    @classmethod
    def from_file(cls, path: str) -> "EngineConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                    thumbprint=c.get("thumbprint", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
        if "scan" in data:
            for k, v in data["scan"].items():
                if hasattr(config.scan, k):
                    setattr(config.scan, k, v)
            config.scan.__post_init__()
        config.verbose = data.get("verbose", False)
        config.log_file = data.get("log_file", "")
        return config


# ─── Required Permissions (Read-Only) ───────────────────────────────────────

REQUIRED_PERMISSIONS = {
    # Microsoft Graph
    "User.Read.All": "Resolve grantee SIDs and display names to UPNs",
    "Group.Read.All": "Resolve group SIDs to group names",

    # Office 365 Exchange Online
    "Exchange.ManageAsApp": "Run Get-Mailbox / Get-MailboxPermission app-only",
}

# Entra role the app (or the signed-in admin) needs for the Exchange cmdlets
REQUIRED_ROLE = "View-Only Organization Management"
