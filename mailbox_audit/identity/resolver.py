"""
Identity resolver: turns raw security identifiers and display names into
user principal names via Microsoft Graph.
A failed lookup is never fatal: the raw identifier is returned unchanged.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from ..graph.client import GraphClient, GraphAPIError

logger = logging.getLogger("mailbox_audit.identity")

# Domain-account SIDs issued by Active Directory / Entra
SID_PREFIX = "S-1-5-21-"

# Directory collections searched, in order
DIRECTORY_COLLECTIONS = ("users", "groups")


def is_sid_shaped(value: str) -> bool:
    return value.upper().startswith(SID_PREFIX)


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class Resolver(Protocol):
    async def resolve(self, identifier: str, is_sid: bool) -> str: ...


class IdentityResolver:
    """
    Looks up directory objects by securityIdentifier or displayName and
    returns userPrincipalName, falling back to displayName.
    Results (including misses) are memoized per run.
    """

    def __init__(self, graph: GraphClient):
        self.graph = graph
        self._cache: dict[tuple[str, bool], str] = {}
        self.lookups = 0
        self.failures = 0

    async def resolve(self, identifier: str, is_sid: bool) -> str:
        key = (identifier, is_sid)
        if key in self._cache:
            return self._cache[key]

        self.lookups += 1
        try:
            found = await self._lookup(identifier, is_sid)
        except (GraphAPIError, httpx.HTTPError) as e:
            logger.debug(f"Lookup failed for {identifier!r}: {e}")
            found = None

        if found is None:
            self.failures += 1
            resolved = identifier
        else:
            resolved = found
        self._cache[key] = resolved
        return resolved

    async def _lookup(self, identifier: str, is_sid: bool) -> Optional[str]:
        attribute = "securityIdentifier" if is_sid else "displayName"
        params = {
            "$filter": f"{attribute} eq {_odata_literal(identifier)}",
            "$select": "displayName,userPrincipalName",
            "$top": "1",
        }
        for collection in DIRECTORY_COLLECTIONS:
            data = await self.graph.get(collection, params=params)
            objects = data.get("value", [])
            if objects:
                obj = objects[0]
                return obj.get("userPrincipalName") or obj.get("displayName") or None
        logger.debug(f"No directory object with {attribute} = {identifier!r}")
        return None
