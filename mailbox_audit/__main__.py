"""
Mailbox Permission Audit: Main Orchestrator

Usage:
    python -m mailbox_audit                                  # full scan, default profile
    python -m mailbox_audit --profile contoso-prod --folders # include folder permissions
    python -m mailbox_audit --only-changed                   # incremental scan
    python -m mailbox_audit --resume                         # continue an interrupted run
    python -m mailbox_audit --config config.json             # JSON config file
    python -m mailbox_audit --delegated                      # device-code auth flow

Profile management:
    python -m mailbox_audit profile add <name> --tenant-id ... --client-id ...
    python -m mailbox_audit profile list
    python -m mailbox_audit profile remove <name>
    python -m mailbox_audit profile set-default <name>

Exit codes: 0 success, 1 configuration/precondition/authentication failure,
2 remote query failure (partial files kept; rerun with --resume).

This tool is STRICTLY READ-ONLY. It will NEVER modify the tenant.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import httpx

from . import __version__
from .config import (
    EngineConfig,
    CertificateAuth,
    DelegatedAuth,
    DEFAULT_OUTPUT_BASE,
    EXCHANGE_SCOPE,
    GRAPH_SCOPE,
    REQUIRED_ROLE,
)
from .safety.guardian import SafetyGuardian, SafetyViolation
from .auth.authenticator import Authenticator, AuthenticationError
from .graph.client import GraphClient
from .exchange.client import ExchangeClient, ExchangeAPIError
from .identity.resolver import IdentityResolver
from .collectors import MailboxPermissionSource
from .snapshot.store import SnapshotStore, SnapshotLockedError
from .planner import PreconditionError, ScanOptions, plan_scan
from .runner import run_scan
from .models import RunSummary
from .profiles import ProfileStore, TenantProfile, resolve_profile

logger = logging.getLogger("mailbox_audit")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_QUERY_FAILED = 2


class ConfigurationError(Exception):
    """Raised when tenant credentials or the organization cannot be determined."""
    pass


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    action = args.profile_action

    if action == "list":
        return _profile_list()
    elif action == "add":
        return _profile_add(args)
    elif action == "remove":
        return _profile_remove(args)
    elif action == "set-default":
        return _profile_set_default(args)
    return EXIT_OK


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m mailbox_audit profile add <name> \\")
        print("    --tenant-id <GUID> --client-id <GUID> --organization contoso.onmicrosoft.com")
        return EXIT_OK

    print(f"\n  {'Name':<20s} {'Tenant ID':<38s} {'Organization':<32s} {'Domain':<20s} {'Default'}")
    print(f"  {'-'*20} {'-'*38} {'-'*32} {'-'*20} {'-'*7}")
    for p in profiles:
        default_marker = "  *" if p.name == store.default_profile else ""
        print(f"  {p.name:<20s} {p.tenant_id:<38s} {p.organization:<32s} {p.email_domain:<20s}{default_marker}")
    print()
    return EXIT_OK


def _profile_add(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    name = args.profile_name
    if store.get(name):
        print(f"  Profile '{name}' already exists. It will be overwritten.")

    profile = TenantProfile(
        name=name,
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        cert_path=args.cert_path or "./base64.txt",
        organization=args.organization or "",
        email_domain=args.email_domain or "",
        notes=args.notes or "",
    )
    set_as_default = args.set_default or not store.profiles
    store.add(profile, set_default=set_as_default)
    print(f"  Profile '{name}' saved.")
    if set_as_default:
        print("  Set as default profile.")
    return EXIT_OK


def _profile_remove(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.remove(args.profile_name):
        print(f"  Profile '{args.profile_name}' removed.")
    else:
        print(f"  Profile '{args.profile_name}' not found.")
    return EXIT_OK


def _profile_set_default(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.set_default(args.profile_name):
        print(f"  Default profile set to '{args.profile_name}'.")
    else:
        print(f"  Profile '{args.profile_name}' not found.")
    return EXIT_OK


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mailbox_audit",
        description="Mailbox & folder permission audit for Exchange Online (READ-ONLY)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # --- Sub-commands: profile management ---
    subparsers = parser.add_subparsers(dest="command", help="Management commands")

    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--cert-path", default="./base64.txt", help="Path to base64-encoded PFX (default: ./base64.txt)")
    add_p.add_argument("--organization", help="Exchange organization, e.g. contoso.onmicrosoft.com")
    add_p.add_argument("--email-domain", help="Mail domain suffix for self-grant filtering, e.g. @contoso.com")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    # --- Tenant / auth options ---
    parser.add_argument("--profile", "-p", type=str, default=None,
                        help="Tenant profile name to use (run 'profile list' to see available)")
    parser.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    parser.add_argument("--delegated", action="store_true",
                        help="Use delegated (device-code) authentication instead of certificate")
    parser.add_argument("--cert-path", type=Path, help="Path to base64-encoded certificate file (overrides profile)")
    parser.add_argument("--tenant-id", type=str, default=None, help="Tenant ID (overrides profile)")
    parser.add_argument("--client-id", type=str, default=None, help="Client ID (overrides profile)")
    parser.add_argument("--organization", type=str, default=None,
                        help="Exchange organization (defaults to the tenant ID)")

    # --- Scan options ---
    parser.add_argument("--output", "-o", type=str, default=None,
                        help=f"Snapshot base path; -NEW/-TEMP files sit beside it (default: {DEFAULT_OUTPUT_BASE})")
    parser.add_argument("--result-size", type=int, default=None,
                        help="Maximum number of mailboxes to query (default: unlimited)")
    parser.add_argument("--email-domain", type=str, default=None,
                        help="Mail domain suffix; grants to <mailbox><domain> are dropped as self-grants")
    parser.add_argument("--only-changed", action="store_true",
                        help="Only scan mailboxes changed since the snapshot was written, then merge")
    parser.add_argument("--resume", action="store_true",
                        help="Continue an interrupted run from the last mailbox written")
    parser.add_argument("--use-modified-time", action="store_true",
                        help="Use the snapshot's modified time as the change cutoff")
    parser.add_argument("--folders", action="store_true",
                        help="Also collect folder-level permissions")

    # --- Logging ---
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", type=str, default=None, help="Also write the log to this file")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Build configuration from profile, CLI args, or config file. CLI wins."""
    if args.config and args.config.exists():
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig()

    if args.delegated:
        config.auth.mode = "delegated"

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise ConfigurationError(
                f"Profile '{args.profile}' not found. Use 'profile list' to see available profiles."
            )
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    existing = config.auth.certificate or config.auth.delegated
    if profile:
        tenant_id = args.tenant_id or profile.tenant_id
        client_id = args.client_id or profile.client_id
        cert_path = str(args.cert_path) if args.cert_path else profile.resolve_cert_path()
    elif args.tenant_id and args.client_id:
        tenant_id = args.tenant_id
        client_id = args.client_id
        cert_path = str(args.cert_path) if args.cert_path else "./base64.txt"
    elif existing:
        tenant_id = existing.tenant_id
        client_id = existing.client_id
        cert_path = (
            config.auth.certificate.certificate_path if config.auth.certificate else "./base64.txt"
        )
    else:
        raise ConfigurationError(
            "No tenant credentials found. Use --profile <name>, "
            "--tenant-id X --client-id Y, or --config config.json"
        )

    if config.auth.mode == "certificate":
        password = config.auth.certificate.certificate_password if config.auth.certificate else ""
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=cert_path,
            certificate_password=password,
        )
    else:
        config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)

    scan = config.scan
    scan.organization = (
        args.organization
        or scan.organization
        or (profile.organization if profile else "")
        or tenant_id
    )
    scan.email_domain = (
        args.email_domain
        or scan.email_domain
        or (profile.email_domain if profile else "")
    )
    if args.output:
        scan.output_base = args.output
    if args.result_size is not None:
        scan.result_size = args.result_size
    scan.only_changed = args.only_changed or scan.only_changed
    scan.resume = args.resume or scan.resume
    scan.use_modified_time = args.use_modified_time or scan.use_modified_time
    scan.include_folders = args.folders or scan.include_folders
    scan.__post_init__()

    config.verbose = args.verbose or config.verbose
    if args.log_file:
        config.log_file = args.log_file
    return config


def setup_logging(verbose: bool = False, log_file: str = "") -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def print_required_permissions() -> None:
    print("\n  The app registration needs these application permissions:")
    for name, purpose in Authenticator.list_required_permissions().items():
        print(f"    {name:<24s} {purpose}")
    print(f"  and the Exchange role: {REQUIRED_ROLE}\n")


def print_summary(summary: RunSummary, store: SnapshotStore) -> None:
    print("\n" + "=" * 70)
    print(" SCAN COMPLETE")
    print("=" * 70)
    print(f"  Mode:                {summary.mode}")
    if summary.date_for_delta:
        print(f"  Changed since:       {summary.date_for_delta.isoformat()}")
    if summary.continuation_key:
        print(f"  Continued after:     {summary.continuation_key}")
    print(f"  Folder permissions:  {'yes' if summary.include_folders else 'no'}")
    print(f"  Mailboxes processed: {summary.mailboxes_processed}")
    print(f"  Rows retrieved:      {summary.records_written}")
    print(f"  Rows in snapshot:    {summary.records_in_snapshot}")
    print(f"  Elapsed:             {summary.elapsed_seconds}s")
    print(f"  Snapshot:            {store.snapshot_path.resolve()}")
    print()


async def run(config: EngineConfig) -> int:
    """Plan, authenticate, scan, merge. Returns the process exit code."""
    guardian = SafetyGuardian()
    store = SnapshotStore(config.scan.output_base)

    with store.lock():
        probe = store.probe()
        plan = plan_scan(ScanOptions.from_config(config.scan), probe)
        print(f"\n  Mode:    {plan.mode.value}")
        print(f"  Output:  {store.snapshot_path.resolve()}")
        print(f"  Filter:  {plan.mailbox_filter.to_opath() or '<all mailboxes>'}")

        print("\n  Authenticating...")
        authenticator = Authenticator(config.auth)
        exchange_token = await authenticator.acquire_token(EXCHANGE_SCOPE)
        graph_token = await authenticator.acquire_token(GRAPH_SCOPE)
        print("  Authentication successful.")

        exchange = ExchangeClient(exchange_token, guardian, config.scan.organization)
        graph = GraphClient(graph_token, guardian)
        async with exchange, graph:
            resolver = IdentityResolver(graph)
            source = MailboxPermissionSource(exchange, resolver, config.scan.email_domain)
            try:
                summary = await run_scan(plan, source, store)
            finally:
                logger.debug(f"Exchange client: {exchange.get_stats()}")
                logger.debug(f"Graph client: {graph.get_stats()}")
                logger.debug(
                    f"Identity lookups: {resolver.lookups}, unresolved: {resolver.failures}"
                )
                logger.debug(f"Safety audit: {guardian.get_audit_record()}")

    print_summary(summary, store)
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """Synchronous entry point for `python -m mailbox_audit`."""
    args = parse_args(argv)

    if getattr(args, "command", None) == "profile":
        if not getattr(args, "profile_action", None):
            print("Usage: python -m mailbox_audit profile {add|list|remove|set-default}")
            return EXIT_OK
        return _cmd_profile(args)

    SafetyGuardian.print_banner()

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"\n  {e}")
        return EXIT_CONFIG
    setup_logging(config.verbose, config.log_file)

    try:
        return asyncio.run(run(config))
    except AuthenticationError as e:
        logger.error(str(e))
        print_required_permissions()
        return EXIT_CONFIG
    except (ConfigurationError, PreconditionError, SnapshotLockedError) as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except (ExchangeAPIError, httpx.HTTPError, SafetyViolation) as e:
        logger.error(f"Scan failed: {e}")
        logger.error("Partial results were kept; rerun with --resume to continue.")
        return EXIT_QUERY_FAILED


if __name__ == "__main__":
    sys.exit(main())
