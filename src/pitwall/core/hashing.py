"""Content fingerprints for change detection.

A fingerprint is a pure function of what a rendered message *shows*: weekend
name and icon plus, per session, display name, start, duration and status.
Row ids and unrelated columns are excluded and sessions are sorted first, so
two logically identical snapshots always hash the same regardless of the
order rows came back from the database.

No cryptographic property is needed. A collision means one skipped edit; the
next real change heals it.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from typing import Any

from pitwall.models import Session, Weekend

FINGERPRINT_HEX_WIDTH = 16


def _session_view(session: Session) -> dict[str, Any]:
    return {
        "name": session.display_name,
        "start": int(session.start_date.timestamp()),
        "duration": int(session.duration.total_seconds()),
        "status": session.status.value,
    }


def _sort_key(view: dict[str, Any]) -> tuple[int, str, int, str]:
    return (view["start"], view["name"], view["duration"], view["status"])


def structural_view(weekend: Weekend | None, sessions: Iterable[Session] = ()) -> dict[str, Any]:
    """Build the normalized structure a fingerprint is computed over."""
    if weekend is None:
        return {"weekend": None, "sessions": []}
    views = sorted((_session_view(s) for s in sessions), key=_sort_key)
    return {
        "weekend": {"name": weekend.name, "icon": weekend.icon},
        "sessions": views,
    }


def _digest(view: dict[str, Any]) -> str:
    encoded = json.dumps(view, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:FINGERPRINT_HEX_WIDTH]


def fingerprint(weekend: Weekend, sessions: Iterable[Session]) -> str:
    """Return a fixed-width hex fingerprint of a weekend snapshot."""
    return _digest(structural_view(weekend, sessions))

