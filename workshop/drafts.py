# workshop/drafts.py
"""Durable snapshot of a job card that has not been created yet."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

DEFAULT_KEY = "jobCardDraft"

DRAFT_FIELDS = (
    "customerId",
    "vehicleId",
    "technicianId",
    "supervisorId",
    "lineItems",
    "notes",
    "overallComment",
    "status",
)


class DraftStore:
    def __init__(self, store, key: str = DEFAULT_KEY) -> None:
        self.store = store
        self.key = key

    def save(self, snapshot: Dict[str, Any]) -> None:
        payload = {name: snapshot.get(name) for name in DRAFT_FIELDS}
        self.store.set(self.key, json.dumps(payload))

    def load(self) -> Optional[Dict[str, Any]]:
        raw = self.store.get(self.key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logging.exception("discarding unreadable job card draft")
            return None
        return data if isinstance(data, dict) else None

    def clear(self) -> None:
        self.store.remove(self.key)


def has_content(snapshot: Optional[Dict[str, Any]]) -> bool:
    """Whether a loaded draft is worth telling the user about."""
    if not snapshot:
        return False
    return bool(snapshot.get("customerId") or snapshot.get("lineItems"))
