# workshop/catalog.py
"""Catalog entries, stock items and the add-a-service decision."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from workshop.line_items import format_duration, parse_duration

OIL_CHANGE_NAME = "Oil Change"

SUB_OPTION_KINDS = ("text", "select", "multiselect")


def _entry_id(raw: Mapping[str, Any]) -> Optional[str]:
    value = raw.get("_id") or raw.get("id")
    return str(value) if value else None


def _float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


@dataclass
class SubOption:
    key: str
    label: str
    kind: str = "text"
    options: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SubOption":
        kind = raw.get("type") or raw.get("kind") or "text"
        if kind not in SUB_OPTION_KINDS:
            kind = "text"
        return cls(
            key=str(raw.get("key") or raw.get("label") or ""),
            label=str(raw.get("label") or raw.get("key") or ""),
            kind=kind,
            options=[str(o) for o in raw.get("options") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "label": self.label, "type": self.kind,
                "options": list(self.options)}


@dataclass
class CatalogEntry:
    id: Optional[str]
    name: str
    base_price: Optional[float] = None
    default_duration_minutes: Optional[float] = None
    estimated_time: str = ""
    sub_options: List[SubOption] = field(default_factory=list)
    allow_comments: bool = False
    allowed_parts: List[str] = field(default_factory=list)
    inventory_item_id: Optional[str] = None
    consume_quantity_per_use: float = 1
    visibility: str = "local"
    type: str = "service"
    is_active: bool = True

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CatalogEntry":
        price = raw.get("basePrice")
        if price is None:
            price = raw.get("cost")
        duration = raw.get("defaultDurationMinutes")
        return cls(
            id=_entry_id(raw),
            name=str(raw.get("name") or ""),
            base_price=_float(price) if price is not None else None,
            default_duration_minutes=_float(duration) if duration is not None else None,
            estimated_time=str(raw.get("estimatedTime") or ""),
            sub_options=[SubOption.from_dict(o) for o in raw.get("subOptions") or []],
            allow_comments=bool(raw.get("allowComments") or False),
            allowed_parts=[str(p) for p in raw.get("allowedParts") or []],
            inventory_item_id=raw.get("inventoryItemId") or None,
            consume_quantity_per_use=_float(raw.get("consumeQuantityPerUse"), 1) or 1,
            visibility=raw.get("visibility") or "local",
            type=raw.get("type") or "service",
            is_active=raw.get("isActive", True) is not False,
        )

    @property
    def needs_detail_capture(self) -> bool:
        return bool(self.sub_options or self.allow_comments or self.allowed_parts)

    @property
    def is_custom(self) -> bool:
        return self.visibility == "local"


@dataclass
class InventoryItem:
    id: str
    name: str
    sku: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    stock: float = 0
    min_stock: float = 0
    sale_price: float = 0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "InventoryItem":
        return cls(
            id=_entry_id(raw) or "",
            name=str(raw.get("name") or ""),
            sku=raw.get("sku"),
            category=raw.get("category"),
            unit=raw.get("unit"),
            stock=_float(raw.get("currentStock", raw.get("stock"))),
            min_stock=_float(raw.get("minStock", raw.get("minimumStock"))),
            sale_price=_float(raw.get("salePrice")),
        )

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.min_stock

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock < 0


@dataclass
class AcquisitionDecision:
    requires_detail_capture: bool
    via: str  # 'oilLegacy' | 'generic' | 'none'
    effective_price: float
    effective_duration: float
    estimated_time: str
    entry: CatalogEntry


class CatalogSnapshot:
    """Catalog and inventory as fetched once for an editing session."""

    def __init__(self, entries=None, inventory=None) -> None:
        self.entries: List[CatalogEntry] = list(entries or [])
        self.inventory: Dict[str, InventoryItem] = {
            item.id: item for item in (inventory or [])
        }

    @classmethod
    def load(cls, catalog_service, inventory_service) -> "CatalogSnapshot":
        """Fetch both lists.  Failures propagate to the caller."""
        entries = [
            CatalogEntry.from_dict(raw)
            for raw in catalog_service.list()
            if (raw.get("type") or "service") == "service" and raw.get("isActive", True) is not False
        ]
        inventory = [InventoryItem.from_dict(raw) for raw in inventory_service.list()]
        logging.info("catalog snapshot entries=%s inventory=%s", len(entries), len(inventory))
        return cls(entries, inventory)

    def find(self, entry_id: Optional[str]) -> Optional[CatalogEntry]:
        if not entry_id:
            return None
        return next((e for e in self.entries if e.id == entry_id), None)

    def stock_for(self, inventory_item_id: Optional[str]) -> Optional[InventoryItem]:
        if not inventory_item_id:
            return None
        return self.inventory.get(inventory_item_id)

    def sorted_entries(self) -> List[CatalogEntry]:
        return sorted(self.entries, key=lambda e: e.name.lower())


def _candidate_price(candidate: Mapping[str, Any]) -> float:
    for name in ("basePrice", "cost", "price"):
        if candidate.get(name) is not None:
            return max(_float(candidate.get(name)), 0.0)
    return 0.0


def _candidate_duration(candidate: Mapping[str, Any]) -> float:
    for name in ("defaultDurationMinutes", "durationMinutes"):
        if candidate.get(name) is not None:
            return max(_float(candidate.get(name)), 0.0)
    return parse_duration(candidate.get("estimatedTime"))


def resolve(candidate: Mapping[str, Any], snapshot: CatalogSnapshot) -> AcquisitionDecision:
    """Decide how ``candidate`` may be attached to a job card.

    The catalog entry is looked up by id; hand-entered services with no
    entry are judged on their own declarations.
    """
    entry = snapshot.find(_entry_id(candidate)) or CatalogEntry.from_dict(candidate)

    if entry.needs_detail_capture:
        via = "generic"
    elif entry.name == OIL_CHANGE_NAME or candidate.get("name") == OIL_CHANGE_NAME:
        via = "oilLegacy"
    else:
        via = "none"

    price = entry.base_price if entry.base_price is not None else _candidate_price(candidate)
    if entry.default_duration_minutes is not None:
        duration = entry.default_duration_minutes
    else:
        duration = _candidate_duration(candidate) or parse_duration(entry.estimated_time)
    estimated_time = (
        entry.estimated_time
        or str(candidate.get("estimatedTime") or "")
        or format_duration(duration)
    )

    return AcquisitionDecision(
        requires_detail_capture=via != "none",
        via=via,
        effective_price=max(price, 0.0),
        effective_duration=max(duration, 0.0),
        estimated_time=estimated_time,
        entry=entry,
    )
