"""
Tests for the Exchange admin API client and the read-only guardian.

Covers:
- InvokeCommand request shape and pagination
- errors surface as ExchangeAPIError
- throttling retry
- only allow-listed Get-* cmdlets are sent
"""
import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from mailbox_audit.exchange.client import ExchangeAPIError, ExchangeClient
from mailbox_audit.safety.guardian import SafetyGuardian, SafetyViolation

INVOKE_URL = "https://outlook.office365.com/adminapi/beta/contoso.onmicrosoft.com/InvokeCommand"


def invoke_with(handler, cmdlet, parameters=None, guardian=None):
    async def _run():
        client = ExchangeClient(
            "token",
            guardian or SafetyGuardian(),
            "contoso.onmicrosoft.com",
            transport=httpx.MockTransport(handler),
        )
        async with client:
            return await client.invoke(cmdlet, parameters), client
    return asyncio.run(_run())


# =============================================================================
# ExchangeClient
# =============================================================================

class TestExchangeClient:

    def test_invoke_body_and_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": [{"Name": "M1"}]})

        items, _ = invoke_with(handler, "Get-Mailbox", {"ResultSize": "Unlimited", "Filter": None})

        assert items == [{"Name": "M1"}]
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == INVOKE_URL
        body = json.loads(request.content)
        assert body == {"CmdletInput": {"CmdletName": "Get-Mailbox", "Parameters": {"ResultSize": "Unlimited"}}}
        assert request.headers["X-AnchorMailbox"].endswith("@contoso.onmicrosoft.com")

    def test_follows_next_link(self):
        def handler(request):
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={"value": [{"Name": "M2"}]})
            return httpx.Response(200, json={
                "value": [{"Name": "M1"}],
                "@odata.nextLink": INVOKE_URL + "?$skiptoken=abc",
            })

        items, client = invoke_with(handler, "Get-Mailbox")

        assert [i["Name"] for i in items] == ["M1", "M2"]
        assert client.get_stats()["total_requests"] == 2

    def test_error_raises(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": "BadRequest", "message": "Cannot bind parameter 'Filter'"}})

        with pytest.raises(ExchangeAPIError) as exc_info:
            invoke_with(handler, "Get-Mailbox", {"Filter": "bogus"})

        assert exc_info.value.status_code == 400
        assert "Cannot bind parameter" in str(exc_info.value)

    def test_forbidden_raises(self):
        def handler(request):
            return httpx.Response(403, json={"error": {"message": "Access denied"}})

        with pytest.raises(ExchangeAPIError):
            invoke_with(handler, "Get-MailboxPermission", {"Identity": "M1"})

    def test_throttling_retried(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "1"}),
            httpx.Response(200, json={"value": [{"User": "alice@contoso.com"}]}),
        ]

        def handler(request):
            return responses.pop(0)

        async def no_sleep(_seconds):
            return None

        with patch("mailbox_audit.graph.client.asyncio.sleep", no_sleep):
            items, client = invoke_with(handler, "Get-MailboxPermission", {"Identity": "M1"})

        assert items == [{"User": "alice@contoso.com"}]
        assert client.get_stats()["throttle_events"] == 1


# =============================================================================
# SafetyGuardian
# =============================================================================

class TestSafetyGuardian:

    def test_get_requests_allowed(self):
        assert SafetyGuardian().validate_request("GET", "https://graph.microsoft.com/v1.0/users")

    def test_allowed_cmdlet(self):
        body = {"CmdletInput": {"CmdletName": "Get-MailboxFolderPermission", "Parameters": {}}}
        assert SafetyGuardian().validate_request("POST", INVOKE_URL, body)

    def test_write_cmdlet_blocked(self):
        guardian = SafetyGuardian()
        body = {"CmdletInput": {"CmdletName": "Add-MailboxPermission", "Parameters": {}}}

        with pytest.raises(SafetyViolation):
            guardian.validate_request("POST", INVOKE_URL, body)

        record = guardian.get_audit_record()["safety_guardian"]
        assert record["violations_detected"] == 1
        assert record["status"] == "VIOLATIONS_DETECTED"

    def test_unlisted_read_cmdlet_blocked(self):
        body = {"CmdletInput": {"CmdletName": "Get-InboxRule", "Parameters": {}}}
        with pytest.raises(SafetyViolation):
            SafetyGuardian().validate_request("POST", INVOKE_URL, body)

    def test_other_writes_blocked(self):
        with pytest.raises(SafetyViolation):
            SafetyGuardian().validate_request("PATCH", "https://graph.microsoft.com/v1.0/users/1")

    def test_blocked_cmdlet_never_sent(self):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={"value": []})

        with pytest.raises(SafetyViolation):
            invoke_with(handler, "Remove-MailboxPermission", {"Identity": "M1"})

        assert sent == []
