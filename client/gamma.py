"""
Gamma API client for market discovery and settlement detection. Pure REST, no SDK dependency.
"""

from __future__ import annotations

import json
import logging

import httpx

from scanner.models import Market, Resolution

logger = logging.getLogger(__name__)

_TIMEOUT = 30.0


async def _get(client: httpx.AsyncClient, base_url: str, path: str, params: dict | None = None) -> dict | list:
    """Make a GET request to the Gamma API. Raises on non-200."""
    resp = await client.get(f"{base_url}{path}", params=params, timeout=_TIMEOUT)
    resp.raise_for_status()
    return resp.json()


def _json_list(raw) -> list:
    # Gamma encodes several list fields as JSON strings
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return []
    return raw if isinstance(raw, list) else []


def parse_market(m: dict) -> Market | None:
    """Build a Market from a Gamma record. Returns None for non-binary markets."""
    raw_ids = _json_list(m.get("clobTokenIds") or m.get("clob_token_ids"))
    if len(raw_ids) != 2:
        return None
    tick_raw = m.get("orderPriceMinTickSize") or m.get("minimumTickSize") or m.get("minimum_tick_size") or "0.01"
    end_date = str(
        m.get("endDateIso")
        or m.get("end_date_iso")
        or m.get("endDate")
        or m.get("end_date")
        or ""
    )
    return Market(
        market_id=m.get("conditionId", m.get("condition_id", "")),
        question=m.get("question", ""),
        yes_token_id=str(raw_ids[0]),
        no_token_id=str(raw_ids[1]),
        min_tick_size=str(tick_raw),
        active=bool(m.get("active", True)),
        closed=bool(m.get("closed", False)),
        end_date=end_date,
        volume=float(m.get("volumeNum", m.get("volume", 0)) or 0),
    )


async def get_markets(
    client: httpx.AsyncClient,
    gamma_host: str,
    condition_ids: list[str] | None = None,
    active: bool = True,
    closed: bool = False,
    limit: int = 500,
    offset: int = 0,
) -> list[Market]:
    """
    Fetch binary markets. When condition_ids is given only those markets are
    requested (and the active/closed filters are not applied).
    """
    params: dict = {"limit": limit, "offset": offset}
    if condition_ids:
        params["condition_ids"] = condition_ids
    else:
        params["active"] = str(active).lower()
        params["closed"] = str(closed).lower()
    raw_markets = await _get(client, gamma_host, "/markets", params)
    markets = []
    for m in raw_markets:
        market = parse_market(m)
        if market is not None and market.market_id:
            markets.append(market)
    return markets


def parse_resolution(m: dict) -> Resolution | None:
    """
    Settlement from a Gamma record: the market must be closed and
    outcomePrices must have collapsed to a payout (each price 0 or 1, or a
    50/50 split for voided markets).
    """
    if not m.get("closed", False):
        return None
    prices = _json_list(m.get("outcomePrices"))
    if len(prices) != 2:
        return None
    try:
        yes_payout, no_payout = float(prices[0]), float(prices[1])
    except (TypeError, ValueError):
        return None
    if abs(yes_payout + no_payout - 1.0) > 1e-6:
        return None
    if yes_payout not in (0.0, 0.5, 1.0):
        # Closed but not yet finalized
        return None
    return Resolution(
        market_id=m.get("conditionId", m.get("condition_id", "")),
        yes_payout=yes_payout,
        no_payout=no_payout,
    )


class GammaSettlementSource:
    """Settlement source for RESOLVING positions, backed by the Gamma /markets endpoint."""

    def __init__(self, client: httpx.AsyncClient, gamma_host: str) -> None:
        self._client = client
        self._host = gamma_host

    async def resolution(self, market_id: str) -> Resolution | None:
        try:
            raw = await _get(self._client, self._host, "/markets", {"condition_ids": [market_id]})
        except httpx.HTTPError as e:
            logger.warning("Gamma settlement lookup failed for %s: %s", market_id, e)
            return None
        for m in raw:
            if m.get("conditionId", m.get("condition_id")) == market_id:
                return parse_resolution(m)
        return None
