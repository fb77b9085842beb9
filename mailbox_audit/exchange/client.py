"""
Exchange Online admin API client.
Runs read-only cmdlets through the REST InvokeCommand endpoint and follows
@odata.nextLink pagination.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import EXCHANGE_BASE_URL, EXCHANGE_ADMIN_API, MAX_PAGES_PER_ENDPOINT
from ..graph.client import RestClient
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("mailbox_audit.exchange")

# Well-known arbitration mailbox used to route admin API calls for a tenant
ANCHOR_MAILBOX = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"

RESULT_PAGE_SIZE = 1000


class ExchangeAPIError(Exception):
    """Raised when a cmdlet fails remotely. Always fatal to the current run."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Exchange API Error {status_code} for {url}: {message}")


class ExchangeClient(RestClient):
    """
    Async client for https://outlook.office365.com/adminapi.
    Each call is one cmdlet; results stream one object at a time.
    """

    error_class = ExchangeAPIError

    def __init__(
        self,
        access_token: str,
        guardian: SafetyGuardian,
        organization: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(access_token, guardian, transport=transport)
        self.organization = organization

    def _default_headers(self) -> dict:
        headers = super()._default_headers()
        headers["X-AnchorMailbox"] = f"UPN:{ANCHOR_MAILBOX}@{self.organization}"
        headers["Prefer"] = f"odata.maxpagesize={RESULT_PAGE_SIZE}"
        return headers

    @property
    def invoke_url(self) -> str:
        return f"{EXCHANGE_BASE_URL}/{EXCHANGE_ADMIN_API}/{self.organization}/InvokeCommand"

    async def invoke(self, cmdlet: str, parameters: Optional[dict] = None) -> list[dict]:
        """Run a cmdlet and collect every result object."""
        return [item async for item in self.invoke_stream(cmdlet, parameters)]

    async def invoke_stream(
        self,
        cmdlet: str,
        parameters: Optional[dict] = None,
    ) -> AsyncGenerator[dict, Any]:
        """Run a cmdlet and yield result objects page by page."""
        body = {
            "CmdletInput": {
                "CmdletName": cmdlet,
                "Parameters": {k: v for k, v in (parameters or {}).items() if v is not None},
            }
        }
        url: Optional[str] = self.invoke_url
        pages = 0
        logger.debug(f"{cmdlet} {body['CmdletInput']['Parameters']}")

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            self.guardian.validate_request("POST", url, body)
            data = await self._execute_with_retry("POST", url, json_body=body)

            if data.get("_not_found"):
                raise ExchangeAPIError(404, f"{cmdlet} endpoint not found", url)

            for item in data.get("value", []):
                yield item

            url = data.get("@odata.nextLink")
            pages += 1

        if pages >= MAX_PAGES_PER_ENDPOINT:
            logger.warning(
                f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) "
                f"for cmdlet: {cmdlet}"
            )
