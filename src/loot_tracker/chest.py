"""Loot chest: the stacked inventory of all confirmed loot in an activity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from .models import (
    ChestKey,
    ItemPrice,
    LootItem,
    format_timestamp,
    parse_optional_timestamp,
    utcnow,
)

DEFAULT_CHEST_NAME = "Loot Chest"


@dataclass(slots=True)
class ChestItem:
    item_type: str
    quality: int
    slot: str
    count: int = 0
    price: Optional[ItemPrice] = None

    @property
    def key(self) -> ChestKey:
        return ChestKey(self.item_type, self.quality, self.slot)

    @property
    def value(self) -> int:
        return self.count * (self.price.sell_price if self.price else 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.item_type,
            "count": self.count,
            "quality": self.quality,
            "slot": self.slot,
            "price": self.price.to_dict() if self.price else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChestItem":
        price = data.get("price")
        return cls(
            item_type=data["type"],
            quality=int(data.get("quality") or 0),
            slot=str(data.get("slot") or ""),
            count=int(data.get("count") or 1),
            price=ItemPrice.from_dict(price) if price else None,
        )


@dataclass(slots=True)
class LootChest:
    """Stackable inventory keyed by ``(type, quality, slot)``."""

    name: str = DEFAULT_CHEST_NAME
    city: Optional[str] = None
    items: dict[ChestKey, ChestItem] = field(default_factory=dict)
    total_value: int = 0
    last_price_update: Optional[datetime] = None

    def add_loot(self, loot: Iterable[LootItem], now: Optional[datetime] = None) -> int:
        """Merge confirmed loot into the chest and return the number of stacks added."""
        merged = 0
        for item in loot:
            existing = self.items.get(item.key)
            if existing is None:
                self.items[item.key] = ChestItem(
                    item_type=item.item_type,
                    quality=item.quality,
                    slot=item.slot,
                    count=item.count,
                    price=item.price,
                )
            else:
                existing.count += item.count
                if item.price is not None and item.price.found:
                    existing.price = item.price
            merged += 1
        if merged:
            self.recompute_value()
            self.last_price_update = now or utcnow()
        return merged

    def apply_prices(
        self, price_map: Mapping[str, ItemPrice], now: Optional[datetime] = None
    ) -> int:
        """Refresh stack prices from a valuation lookup; unresolved prices are kept."""
        updated = 0
        for item in self.items.values():
            price = price_map.get(f"{item.item_type}_{item.quality}")
            if price is not None and price.found:
                item.price = price
                updated += 1
        self.recompute_value()
        self.last_price_update = now or utcnow()
        return updated

    def recompute_value(self) -> int:
        self.total_value = sum(item.value for item in self.items.values())
        return self.total_value

    def rename(self, name: Optional[str]) -> None:
        self.name = (name or "").strip() or DEFAULT_CHEST_NAME

    @property
    def total_items(self) -> int:
        return sum(item.count for item in self.items.values())

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "totalItems": self.total_items,
            "uniqueItems": len(self.items),
            "totalValue": self.total_value,
            "items": [item.to_dict() for item in self.items.values()],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "items": [item.to_dict() for item in self.items.values()],
            "totalValue": self.total_value,
            "city": self.city,
            "lastPriceUpdate": format_timestamp(self.last_price_update),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], city: Optional[str] = None) -> "LootChest":
        chest = cls(
            name=data.get("name") or DEFAULT_CHEST_NAME,
            city=data.get("city") or city,
            last_price_update=parse_optional_timestamp(data.get("lastPriceUpdate")),
        )
        for raw in data.get("items") or []:
            item = ChestItem.from_dict(raw)
            existing = chest.items.get(item.key)
            if existing is None:
                chest.items[item.key] = item
            else:
                existing.count += item.count
        chest.recompute_value()
        return chest
