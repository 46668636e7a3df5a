# workshop/optimistic.py
"""Snapshot, apply, call, then keep or restore."""

from __future__ import annotations

from typing import Any, Callable, Tuple

from workshop.api.client import ApiError


def run_optimistic(
    snapshot: Callable[[], Any],
    restore: Callable[[Any], None],
    apply: Callable[[], None],
    remote: Callable[[], Any],
) -> Tuple[bool, Any]:
    """Apply a local change ahead of the remote call that confirms it.

    Returns ``(True, result)`` when ``remote`` succeeds, leaving the applied
    state in place.  When ``remote`` raises :class:`ApiError` the state taken
    before ``apply`` is restored and ``(False, error)`` is returned.
    """
    saved = snapshot()
    apply()
    try:
        result = remote()
    except ApiError as exc:
        restore(saved)
        return False, exc
    return True, result
