# workshop/kv_store.py
"""Local durable key-value store backing the job card draft."""

from __future__ import annotations

from workshop import db
from workshop.models import KeyValueEntry


class SqlKeyValueStore:
    """``get``/``set``/``remove`` over the ``key_value_entry`` table.

    Needs an application context, like the rest of the SQLAlchemy models.
    """

    def get(self, key: str) -> str | None:
        row = db.session.get(KeyValueEntry, key)
        return row.value if row else None

    def set(self, key: str, value: str) -> None:
        row = db.session.get(KeyValueEntry, key)
        if row is None:
            row = KeyValueEntry(key=key)
            db.session.add(row)
        row.value = value
        db.session.commit()

    def remove(self, key: str) -> None:
        row = db.session.get(KeyValueEntry, key)
        if row is not None:
            db.session.delete(row)
            db.session.commit()
