"""
canvas_model.py

Positioned-entity store for the bubble canvas.

Design goals:
- Bubbles are immutable records; the store is a plain tuple
- Every mutation returns a new tuple (callers swap it in on the owner thread)
- `held` is local-only and never serialised back to the store
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Vec2:
    x: float
    y: float


@dataclass(frozen=True)
class Bubble:
    id: str
    text: str
    position: Vec2
    color: str
    creator_id: str
    held: bool = False


def ref_id(value: Any) -> str:
    """Return the id of a populated `{_id, ...}` reference or a bare id."""
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id")
    if value is None:
        return ""
    return str(value)


def bubble_from_record(record: Any) -> Bubble | None:
    """
    Build a Bubble from a store record.

    Returns None (and logs) for records missing an id or a usable position.
    """
    if not isinstance(record, dict):
        logger.warning("Skipping non-object bubble record: %r", record)
        return None
    bubble_id = ref_id(record.get("_id") or record.get("id"))
    if not bubble_id:
        logger.warning("Skipping bubble record without id")
        return None
    pos = record.get("position") or {}
    try:
        position = Vec2(float(pos.get("x")), float(pos.get("y")))
    except (TypeError, ValueError, AttributeError):
        logger.warning("Skipping bubble %s with bad position %r", bubble_id, pos)
        return None
    return Bubble(
        id=bubble_id,
        text=str(record.get("text") or ""),
        position=position,
        color=str(record.get("color") or ""),
        creator_id=ref_id(record.get("creator")),
    )


def bubble_to_dict(bubble: Bubble) -> dict:
    return {
        "id": bubble.id,
        "text": bubble.text,
        "position": {"x": bubble.position.x, "y": bubble.position.y},
        "color": bubble.color,
        "creator_id": bubble.creator_id,
        "held": bubble.held,
    }


# --------------------------- Store helpers ---------------------------


def find_bubble(bubbles: tuple[Bubble, ...], bubble_id: str) -> Bubble | None:
    for b in bubbles:
        if b.id == bubble_id:
            return b
    return None


def replace_bubble(bubbles: tuple[Bubble, ...], bubble_id: str, **changes: Any) -> tuple[Bubble, ...]:
    patched = []
    for b in bubbles:
        if b.id == bubble_id:
            patched.append(replace(b, **changes))
        else:
            patched.append(b)
    return tuple(patched)

