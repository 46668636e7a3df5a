# workshop/line_items.py
"""Canonical shape for job card service lines.

Line items reach us from the job store, the draft store, the catalog and the
inventory list, and over the years each of those has used its own field
names.  Everything is funnelled through :func:`normalize`, which always
returns a fully populated :class:`ServiceLineItem`.  Nothing past this module
should need to care which shape a record arrived in.
"""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

OIL_DETAIL_KEYS = ("oilFilter", "oilGrade", "oilMake", "customNote")

# canonical key -> older field names, checked in order
LEGACY_DETAIL_ALIASES = {
    "oilFilter": ("filter",),
    "oilGrade": (),
    "oilMake": (),
    "customNote": ("customField",),
}

PRICE_FIELDS = ("price", "estimatedCost", "cost", "basePrice")

# top-level fields older records used for the oil change details
LEGACY_TOP_LEVEL = ("filter", "oilGrade", "oilMake", "customField")

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
HOURS_RE = re.compile(r"([\d.]+)\s*(?:h|hour|hours)")
MINUTES_RE = re.compile(r"([\d.]+)\s*(?:m|min|minutes?)")
LEADING_NUMBER_RE = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)")


@dataclass
class ServiceLineItem:
    id: str
    name: str = ""
    price: float = 0.0
    duration_minutes: float = 0.0
    estimated_time: str = ""
    completed: bool = False
    service_id: Optional[str] = None
    catalog_id: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)
    sub_option_values: Dict[str, Union[str, List[str]]] = field(default_factory=dict)
    comments: Optional[str] = None
    parts_used: Optional[List[str]] = None
    is_inventory_item: bool = False
    inventory_item_id: Optional[str] = None
    sku: Optional[str] = None
    unit: Optional[str] = None
    category: Optional[str] = None

    @property
    def has_oil_details(self) -> bool:
        return bool(self.details)

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape sent to the job store and written to drafts."""
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "estimatedCost": self.price,
            "durationMinutes": self.duration_minutes,
            "estimatedTime": self.estimated_time,
            "completed": self.completed,
            "serviceId": self.service_id,
            "catalogId": self.catalog_id,
            "details": dict(self.details),
            "subOptionValues": {
                k: (list(v) if isinstance(v, list) else v)
                for k, v in self.sub_option_values.items()
            },
            "comments": self.comments,
            "partsUsed": list(self.parts_used) if self.parts_used is not None else None,
            "isInventoryItem": self.is_inventory_item,
            "inventoryItemId": self.inventory_item_id,
            "sku": self.sku,
            "unit": self.unit,
            "category": self.category,
        }


RawLineItem = Union[ServiceLineItem, Mapping[str, Any]]


def is_valid_object_id(value: Any) -> bool:
    """True for the store's 24 character hexadecimal identifiers."""
    return isinstance(value, str) and bool(OBJECT_ID_RE.fullmatch(value))


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        else:
            text = str(value).strip()
            if not text:
                return None
            number = float(text)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _non_negative(value: Optional[float]) -> float:
    if value is None or value < 0:
        return 0.0
    return value


def _component(pattern: re.Pattern, text: str) -> float:
    match = pattern.search(text)
    if not match:
        return 0.0
    try:
        return float(match.group(1))
    except ValueError:
        return 0.0


def parse_duration(value: Any) -> float:
    """Minutes for a free-text estimate such as ``"2h"``, ``"1h 30m"`` or ``"45"``.

    Hours and minutes are extracted independently and summed.  When neither
    matches, the leading number is taken as minutes.  Anything unparseable
    is 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return _non_negative(_to_number(value))

    text = str(value).strip().lower()
    if not text:
        return 0.0

    minutes = _component(HOURS_RE, text) * 60 + _component(MINUTES_RE, text)
    if not minutes:
        match = LEADING_NUMBER_RE.match(text)
        if match:
            minutes = float(match.group(0))

    if not math.isfinite(minutes):
        return 0.0
    return _non_negative(minutes)


def format_duration(minutes: float) -> str:
    if not minutes or minutes <= 0:
        return ""
    total = int(round(minutes))
    hours, mins = divmod(total, 60)
    parts = []
    if hours:
        parts.append(f"{hours} hour{'s' if hours > 1 else ''}")
    if mins:
        parts.append(f"{mins} min{'s' if mins > 1 else ''}")
    return " ".join(parts)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _reconcile_details(raw: Mapping[str, Any]) -> Dict[str, str]:
    existing = raw.get("details") or {}
    if not isinstance(existing, Mapping):
        existing = {}
    details: Dict[str, str] = {}
    for key in OIL_DETAIL_KEYS:
        candidates = [existing.get(key), raw.get(key)]
        for alias in LEGACY_DETAIL_ALIASES[key]:
            candidates.append(existing.get(alias))
            candidates.append(raw.get(alias))
        for candidate in candidates:
            text = _clean(candidate)
            if text:
                details[key] = text
                break
    return details


def _sub_option_values(raw: Any) -> Dict[str, Union[str, List[str]]]:
    if not isinstance(raw, Mapping):
        return {}
    values: Dict[str, Union[str, List[str]]] = {}
    for key, value in raw.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            picked = _unique_strings(value)
            if picked:
                values[str(key)] = picked
        else:
            text = _clean(value)
            if text:
                values[str(key)] = text
    return values


def _unique_strings(values: Any) -> List[str]:
    seen: List[str] = []
    for value in values or ():
        text = _clean(value)
        if text and text not in seen:
            seen.append(text)
    return seen


def _price(raw: Mapping[str, Any]) -> float:
    for name in PRICE_FIELDS:
        if raw.get(name) is not None:
            return _non_negative(_to_number(raw.get(name)))
    return 0.0


def _duration(raw: Mapping[str, Any]) -> float:
    explicit = raw.get("durationMinutes")
    if explicit is not None and not isinstance(explicit, bool):
        if isinstance(explicit, (int, float)):
            return _non_negative(_to_number(explicit))
        return parse_duration(explicit)
    return parse_duration(raw.get("estimatedTime"))


def _first_object_id(*candidates: Any) -> Optional[str]:
    # malformed references are dropped rather than sent upstream
    for candidate in candidates:
        if candidate and is_valid_object_id(str(candidate)):
            return str(candidate)
    return None


def _fallback_id(raw: Mapping[str, Any], position: Optional[int] = None) -> str:
    basis = "|".join(
        _clean(raw.get(k))
        for k in ("name", "catalogId", "serviceId", "inventoryItemId")
    )
    if position is not None:
        basis += f"#{position}"
    return "line-" + hashlib.sha1(basis.encode("utf-8")).hexdigest()[:12]


def normalize(raw: RawLineItem, position: Optional[int] = None) -> ServiceLineItem:
    """Return the canonical form of ``raw``.  Idempotent.

    ``position`` is the index of ``raw`` in its collection; it keeps the
    generated ids of id-less records with the same name apart.
    """
    if isinstance(raw, ServiceLineItem):
        raw = raw.to_dict()

    service_id = _first_object_id(raw.get("serviceId"), raw.get("catalogId"))
    catalog_id = _first_object_id(raw.get("catalogId"), raw.get("serviceId"))

    duration = _duration(raw)
    estimated_time = _clean(raw.get("estimatedTime")) or format_duration(duration)

    comments = _clean(raw.get("comments")) or None
    parts = raw.get("partsUsed")
    parts_used = _unique_strings(parts) if parts else None

    inventory_item_id = raw.get("inventoryItemId")

    return ServiceLineItem(
        id=_clean(raw.get("id") or raw.get("_id")) or _fallback_id(raw, position),
        name=_clean(raw.get("name")),
        price=_price(raw),
        duration_minutes=duration,
        estimated_time=estimated_time,
        completed=bool(raw.get("completed") or False),
        service_id=service_id,
        catalog_id=catalog_id,
        details=_reconcile_details(raw),
        sub_option_values=_sub_option_values(raw.get("subOptionValues")),
        comments=comments,
        parts_used=parts_used or None,
        is_inventory_item=bool(raw.get("isInventoryItem") or False),
        inventory_item_id=_clean(inventory_item_id) or None,
        sku=_clean(raw.get("sku")) or None,
        unit=_clean(raw.get("unit")) or None,
        category=_clean(raw.get("category")) or None,
    )


def normalize_all(items: Any) -> List[ServiceLineItem]:
    present = [item for item in (items or []) if item]
    return [normalize(item, position) for position, item in enumerate(present)]


def effective_price(item: ServiceLineItem) -> float:
    return item.price
