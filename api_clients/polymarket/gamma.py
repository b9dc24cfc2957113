"""
Gamma API client for Polymarket.
Handles market metadata lookups by condition id and the geoblock probe.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from api_clients.base import HTTPClientBase


logger = logging.getLogger(__name__)

GEOBLOCK_URL = "https://polymarket.com/api/geoblock"


@dataclass
class GeoblockResult:
    """Outcome of the geoblock probe."""
    blocked: bool
    reason: Optional[str] = None


def parse_clob_token_ids(value: Any) -> List[str]:
    """
    Parse ``clobTokenIds`` which Gamma returns as a JSON-encoded list, a real
    list, or occasionally a comma-separated string.
    """
    if isinstance(value, list):
        return [str(v) for v in value]
    if not isinstance(value, str):
        return []
    trimmed = value.strip()
    if not trimmed:
        return []
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(v) for v in parsed]
    if "," in trimmed:
        return [part.strip() for part in trimmed.split(",") if part.strip()]
    return [trimmed]


class GammaAPIClient(HTTPClientBase):
    """
    Gamma API client for Polymarket.
    Provides access to market metadata.
    """

    BASE_URL = "https://gamma-api.polymarket.com"
    SERVICE_NAME = "Gamma"

    async def get_market_by_condition(self, condition_id: str) -> Optional[Dict[str, Any]]:
        """Get the market record for a condition id, or None when unknown."""
        params = {"condition_ids": condition_id, "limit": 1, "offset": 0}
        data = await self._request("GET", "/markets", params=params)
        if isinstance(data, dict):
            data = data.get("markets") or data.get("data") or []
        if not isinstance(data, list) or not data:
            return None
        market = data[0]
        return market if isinstance(market, dict) else None

    async def get_token_ids(self, condition_id: str) -> List[str]:
        """Outcome token ids of a market, in outcome-index order."""
        market = await self.get_market_by_condition(condition_id)
        if not market:
            return []
        return parse_clob_token_ids(market.get("clobTokenIds") or market.get("clob_token_ids"))

    async def check_geoblock(self) -> GeoblockResult:
        """Ask Polymarket whether this host is allowed to trade."""
        data = await self._request("GET", GEOBLOCK_URL)
        if isinstance(data, bool):
            return GeoblockResult(blocked=data)
        if not isinstance(data, dict):
            return GeoblockResult(blocked=False)
        blocked = data.get("blocked", data.get("geoBlocked", data.get("geoblocked", False)))
        return GeoblockResult(
            blocked=bool(blocked),
            reason=data.get("reason") or data.get("message"),
        )
