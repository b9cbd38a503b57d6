"""
drag_controller.py

Manual drag and pop handling for bubbles.

Per-bubble state machine: Idle -> Held -> Idle.

- begin():   Idle -> Held.  The bubble gets held=True, so the simulation and
             the reconciler leave its position alone.
- move():    pointer moves while Held.
- release(): Held -> Idle.  Commits the final position locally and returns a
             CommitPositionAction for the runtime to send (fire-and-forget).
- expire_stale() / release_all(): Held -> Idle without a server commit, for
             release events that never arrived.

Methods take the current bubble tuple and return the new one; the runtime
swaps it in on the owner thread.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from canvas_model import Bubble, Vec2, find_bubble, replace_bubble

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitPositionAction:
    bubble_id: str
    position: Vec2


@dataclass(frozen=True)
class PopAction:
    bubble_id: str
    creator_id: str
    text: str


@dataclass
class DragHold:
    bubble_id: str
    started_at: float
    last_activity: float


class DragController:
    def __init__(self, release_timeout_sec: float = 15.0) -> None:
        self.release_timeout_sec = float(release_timeout_sec)
        self._holds: dict[str, DragHold] = {}
        self._popping: set[str] = set()

    @property
    def held_ids(self) -> frozenset[str]:
        return frozenset(self._holds)

    def is_held(self, bubble_id: str) -> bool:
        return bubble_id in self._holds

    # ------------------ Drag ------------------

    def begin(self, bubbles: tuple[Bubble, ...], bubble_id: str, now: float) -> tuple[Bubble, ...]:
        if find_bubble(bubbles, bubble_id) is None:
            logger.debug("Drag start on unknown bubble %s ignored", bubble_id)
            return bubbles
        # One active hold per client: a new grab drops any other.
        for other in list(self._holds):
            if other != bubble_id:
                logger.info("Drag on %s replaces hold on %s", bubble_id, other)
                bubbles = self._drop(bubbles, other)
        self._holds[bubble_id] = DragHold(bubble_id=bubble_id, started_at=now, last_activity=now)
        return replace_bubble(bubbles, bubble_id, held=True)

    def move(self, bubbles: tuple[Bubble, ...], bubble_id: str, position: Vec2, now: float) -> tuple[Bubble, ...]:
        hold = self._holds.get(bubble_id)
        if hold is None:
            return bubbles
        hold.last_activity = now
        return replace_bubble(bubbles, bubble_id, position=position)

    def release(
        self,
        bubbles: tuple[Bubble, ...],
        bubble_id: str,
        position: Vec2,
        now: float,
    ) -> tuple[tuple[Bubble, ...], CommitPositionAction | None]:
        hold = self._holds.pop(bubble_id, None)
        if hold is None:
            logger.debug("Drag release on %s without a hold", bubble_id)
        if find_bubble(bubbles, bubble_id) is None:
            logger.info("Bubble %s vanished during drag; nothing to commit", bubble_id)
            return bubbles, None
        bubbles = replace_bubble(bubbles, bubble_id, position=position, held=False)
        return bubbles, CommitPositionAction(bubble_id=bubble_id, position=position)

    def expire_stale(self, bubbles: tuple[Bubble, ...], now: float) -> tuple[Bubble, ...]:
        for bubble_id, hold in list(self._holds.items()):
            if now - hold.last_activity >= self.release_timeout_sec:
                logger.warning(
                    "Releasing bubble %s: no drag activity for %.1fs",
                    bubble_id, now - hold.last_activity,
                )
                bubbles = self._drop(bubbles, bubble_id)
        return bubbles

    def release_all(self, bubbles: tuple[Bubble, ...]) -> tuple[Bubble, ...]:
        for bubble_id in list(self._holds):
            bubbles = self._drop(bubbles, bubble_id)
        return bubbles

    def forget_missing(self, bubbles: tuple[Bubble, ...]) -> None:
        """Drop holds and pop marks for bubbles no longer in the store."""
        present = {b.id for b in bubbles}
        for bubble_id in list(self._holds):
            if bubble_id not in present:
                logger.info("Held bubble %s was deleted remotely", bubble_id)
                del self._holds[bubble_id]
        self._popping &= present

    def _drop(self, bubbles: tuple[Bubble, ...], bubble_id: str) -> tuple[Bubble, ...]:
        self._holds.pop(bubble_id, None)
        return replace_bubble(bubbles, bubble_id, held=False)

    # ------------------ Pop ------------------

    def open_bubble(self, bubbles: tuple[Bubble, ...], bubble_id: str, local_user_id: str) -> PopAction | None:
        """
        Double-open on a bubble.  Returns a PopAction for someone else's
        bubble, None for the local user's own bubble or one already popping.
        """
        bubble = find_bubble(bubbles, bubble_id)
        if bubble is None:
            return None
        if not bubble.creator_id or bubble.creator_id == local_user_id:
            return None
        if bubble_id in self._popping:
            return None
        self._popping.add(bubble_id)
        return PopAction(bubble_id=bubble.id, creator_id=bubble.creator_id, text=bubble.text)

    def is_popping(self, bubble_id: str) -> bool:
        return bubble_id in self._popping
