"""
reconciler.py

Merge a polled bubble snapshot into the local store.

Pure function: (local, snapshot, held_ids) -> merged.  No timers, no I/O.

Rules:
- the snapshot is authoritative for membership and order
- every record is replaced wholesale and comes back with held=False
- a bubble that is mid-drag keeps its local position and held=True; the
  server position for that id is ignored this cycle
- ids missing from the snapshot are dropped
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from canvas_model import Bubble


def reconcile(
    local: tuple[Bubble, ...],
    snapshot: Iterable[Bubble],
    held_ids: frozenset[str] | set[str] = frozenset(),
) -> tuple[Bubble, ...]:
    local_by_id = {b.id: b for b in local}
    merged: list[Bubble] = []
    seen: set[str] = set()
    for remote in snapshot:
        if remote.id in seen:
            continue
        seen.add(remote.id)
        mine = local_by_id.get(remote.id)
        if remote.id in held_ids and mine is not None:
            merged.append(replace(remote, position=mine.position, held=True))
        else:
            merged.append(replace(remote, held=False))
    return tuple(merged)


def diff_ids(before: tuple[Bubble, ...], after: tuple[Bubble, ...]) -> tuple[set[str], set[str]]:
    """Return (added, removed) ids between two store versions."""
    old = {b.id for b in before}
    new = {b.id for b in after}
    return new - old, old - new
