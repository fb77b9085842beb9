"""
Tests for the Graph-backed identity resolver.

Covers:
- SID lookups return userPrincipalName, falling back to displayName
- display-name lookups
- fallback to the raw identifier on misses and errors
- memoization
"""
import asyncio

import httpx

from mailbox_audit.graph.client import GraphClient
from mailbox_audit.identity.resolver import IdentityResolver, is_sid_shaped
from mailbox_audit.safety.guardian import SafetyGuardian


def resolve_with(handler, identifier, is_sid, repeat=1):
    """Run resolve() against a GraphClient backed by a mock transport."""
    async def _run():
        client = GraphClient("token", SafetyGuardian(), transport=httpx.MockTransport(handler))
        async with client:
            resolver = IdentityResolver(client)
            results = [await resolver.resolve(identifier, is_sid) for _ in range(repeat)]
            return results, resolver
    return asyncio.run(_run())


class TestIdentityResolver:

    def test_sid_resolves_to_upn(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": [
                {"displayName": "Bob Jones", "userPrincipalName": "bob@contoso.com"},
            ]})

        (result,), _ = resolve_with(handler, "S-1-5-21-1-2-3-1001", True)

        assert result == "bob@contoso.com"
        assert seen[0].url.path == "/v1.0/users"
        assert seen[0].url.params["$filter"] == "securityIdentifier eq 'S-1-5-21-1-2-3-1001'"
        assert seen[0].headers["Authorization"] == "Bearer token"

    def test_group_falls_back_to_display_name(self):
        def handler(request):
            if request.url.path.endswith("/users"):
                return httpx.Response(200, json={"value": []})
            return httpx.Response(200, json={"value": [{"displayName": "Helpdesk"}]})

        (result,), _ = resolve_with(handler, "S-1-5-21-9-9-9-500", True)

        assert result == "Helpdesk"

    def test_display_name_lookup_quotes_literal(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": [{"userPrincipalName": "obrien@contoso.com"}]})

        (result,), _ = resolve_with(handler, "Pat O'Brien", False)

        assert result == "obrien@contoso.com"
        assert seen[0].url.params["$filter"] == "displayName eq 'Pat O''Brien'"

    def test_unresolvable_sid_returns_input(self):
        def handler(request):
            return httpx.Response(200, json={"value": []})

        (result,), resolver = resolve_with(handler, "S-1-5-21-BOGUS", True)

        assert result == "S-1-5-21-BOGUS"
        assert resolver.failures == 1

    def test_graph_error_returns_input(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid filter clause"}})

        (result,), _ = resolve_with(handler, "S-1-5-21-BOGUS", True)

        assert result == "S-1-5-21-BOGUS"

    def test_transport_error_returns_input(self):
        def handler(request):
            raise httpx.ReadError("connection reset", request=request)

        (result,), _ = resolve_with(handler, "Someone", False)

        assert result == "Someone"

    def test_lookups_are_memoized(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"value": [{"userPrincipalName": "carol@contoso.com"}]})

        results, resolver = resolve_with(handler, "Carol", False, repeat=3)

        assert results == ["carol@contoso.com"] * 3
        assert len(calls) == 1
        assert resolver.lookups == 1


class TestSidShape:

    def test_sid_prefix(self):
        assert is_sid_shaped("S-1-5-21-123-456")
        assert is_sid_shaped("s-1-5-21-123")

    def test_not_sid(self):
        assert not is_sid_shaped("alice@contoso.com")
        assert not is_sid_shaped("S-1-5-32-544")
        assert not is_sid_shaped("NT AUTHORITY\\SELF")
