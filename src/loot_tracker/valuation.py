"""Best-effort market valuation for looted items."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

import httpx

from .config import TrackerSettings
from .errors import ValuationUnavailableError
from .models import ItemPrice, LootItem, utcnow
from .sources import RequestSpacer

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    def get_items_prices(
        self, items: Sequence[LootItem], city: str
    ) -> dict[str, ItemPrice]: ...


def price_key(item_type: str, quality: int) -> str:
    return f"{item_type}_{quality}"


class AlbionPriceService:
    """Looks up current sell/buy prices from the community market data feed."""

    def __init__(
        self,
        settings: Optional[TrackerSettings] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings or TrackerSettings()
        self._client = client or httpx.Client(
            base_url=self.settings.price_base_url,
            timeout=self.settings.request_timeout.total_seconds(),
            headers={"Accept-Encoding": "gzip"},
        )
        self._spacer = RequestSpacer(self.settings.price_request_spacing)

    def close(self) -> None:
        self._client.close()

    def get_items_prices(
        self, items: Sequence[LootItem], city: str
    ) -> dict[str, ItemPrice]:
        """Return prices keyed by ``<type>_<quality>``, one batch per quality tier."""
        by_quality: dict[int, set[str]] = defaultdict(set)
        for item in items:
            by_quality[item.quality].add(item.item_type)

        prices: dict[str, ItemPrice] = {}
        now = utcnow()
        for quality, item_types in by_quality.items():
            for row in self.get_current_prices(sorted(item_types), city, [quality]):
                sell = int(row.get("sell_price_min") or 0)
                key = price_key(row.get("item_id", ""), int(row.get("quality") or 0))
                prices[key] = ItemPrice(
                    sell_price=sell,
                    buy_price=int(row.get("buy_price_max") or 0),
                    city=row.get("city") or city,
                    last_update=now,
                    found=sell > 0,
                )
        return prices

    def get_current_prices(
        self,
        item_types: Sequence[str],
        city: str,
        qualities: Optional[Iterable[int]] = None,
    ) -> list[dict[str, Any]]:
        unique = list(dict.fromkeys(item_types))
        chunk_size = self.settings.price_chunk_size
        results: list[dict[str, Any]] = []
        failures: list[Exception] = []
        for start in range(0, len(unique), chunk_size):
            chunk = unique[start : start + chunk_size]
            params: dict[str, Any] = {"locations": city}
            if qualities:
                params["qualities"] = ",".join(str(q) for q in qualities)
            self._spacer.wait()
            try:
                response = self._client.get(
                    f"/api/v2/stats/prices/{','.join(chunk)}.json", params=params
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Price lookup for %d items in %s failed: %s", len(chunk), city, exc
                )
                failures.append(exc)
                continue
            if isinstance(payload, list):
                results.extend(row for row in payload if isinstance(row, dict))
        if failures and len(failures) == math.ceil(len(unique) / chunk_size):
            raise ValuationUnavailableError(f"price feed unreachable: {failures[-1]}")
        return results


def attach_prices(
    items: Iterable[LootItem],
    price_map: Mapping[str, ItemPrice],
    city: str,
    now: Optional[datetime] = None,
) -> list[LootItem]:
    """Return copies of ``items`` priced from ``price_map``; misses get a zero price."""
    stamped = now or utcnow()
    priced: list[LootItem] = []
    for item in items:
        price = price_map.get(price_key(item.item_type, item.quality))
        if price is None or not price.found:
            price = ItemPrice(city=city, last_update=stamped, found=False)
        priced.append(item.with_price(price))
    return priced


def total_value(items: Iterable[LootItem]) -> int:
    return sum(item.value for item in items)


def format_price(value: float) -> str:
    if value >= 1_000_000_000:
        return f"{value / 1_000_000_000:.2f}B"
    if value >= 1_000_000:
        return f"{value / 1_000_000:.2f}M"
    if value >= 1_000:
        return f"{value / 1_000:.1f}K"
    return str(int(value))
