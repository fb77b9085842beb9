"""
Tenant Profile Manager: Named profiles so the tenant, app registration,
Exchange organization and mail domain need not be typed on every run.

Profiles are stored in:
    ~/.mailbox_audit/profiles.json
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger("mailbox_audit.profiles")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CONFIG_DIR = Path.home() / ".mailbox_audit"
_PROFILES_FILE = _CONFIG_DIR / "profiles.json"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class TenantProfile:
    """A single named tenant profile."""
    name: str                          # Unique short name (e.g. "contoso-prod")
    tenant_id: str                     # Entra tenant ID
    client_id: str                     # App registration client ID
    cert_path: str = "./base64.txt"    # Path to the base64-encoded PFX certificate
    organization: str = ""             # e.g. contoso.onmicrosoft.com
    email_domain: str = ""             # e.g. @contoso.com
    notes: str = ""                    # Optional admin notes

    def resolve_cert_path(self) -> str:
        """Return absolute cert path, resolving ~ and relative paths."""
        p = Path(self.cert_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        return str(p)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "cert_path": self.cert_path,
            "organization": self.organization,
            "email_domain": self.email_domain,
            "notes": self.notes,
        }


@dataclass
class ProfileStore:
    """Manages the collection of tenant profiles on disk."""
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""
    path: Path = _PROFILES_FILE

    # --- Persistence ---

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfileStore":
        """Load profiles from disk. Returns empty store if file doesn't exist."""
        path = path or _PROFILES_FILE
        store = cls(path=path)
        if not path.exists():
            return store
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            store.default_profile = data.get("default_profile", "")
            for name, pdata in data.get("profiles", {}).items():
                store.profiles[name] = TenantProfile(
                    name=name,
                    tenant_id=pdata["tenant_id"],
                    client_id=pdata["client_id"],
                    cert_path=pdata.get("cert_path", "./base64.txt"),
                    organization=pdata.get("organization", ""),
                    email_domain=pdata.get("email_domain", ""),
                    notes=pdata.get("notes", ""),
                )
            return store
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Failed to parse {path}: {e}")
            return cls(path=path)

    def save(self) -> None:
        """Persist profiles to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "default_profile": self.default_profile,
            "profiles": {name: p.to_dict() for name, p in self.profiles.items()},
        }
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    # --- CRUD ---

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        """Add or overwrite a profile."""
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        """Remove a profile by name. Returns True if it existed."""
        if name not in self.profiles:
            return False
        del self.profiles[name]
        if self.default_profile == name:
            self.default_profile = next(iter(self.profiles), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        """Get a profile by name (case-insensitive)."""
        key = name.lower()
        for pname, profile in self.profiles.items():
            if pname.lower() == key:
                return profile
        return None

    def get_default(self) -> Optional[TenantProfile]:
        """Get the default profile, or None if no profiles exist."""
        if self.default_profile:
            return self.profiles.get(self.default_profile)
        if self.profiles:
            return next(iter(self.profiles.values()))
        return None

    def set_default(self, name: str) -> bool:
        """Set the default profile. Returns True if profile exists."""
        if name not in self.profiles:
            return False
        self.default_profile = name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        """Return all profiles sorted by name."""
        return sorted(self.profiles.values(), key=lambda p: p.name)


def resolve_profile(
    profile_name: Optional[str] = None,
    path: Optional[Path] = None,
) -> Optional[TenantProfile]:
    """
    Look up a tenant profile by name.
    If no name given, returns the default profile.
    """
    store = ProfileStore.load(path)
    if profile_name:
        return store.get(profile_name)
    return store.get_default()
