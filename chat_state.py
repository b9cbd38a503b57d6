"""
chat_state.py

Channel/message store and the decisions made on each channel poll.

Design goals:
- Pure reducers: (state, response) -> next_state
- Channels are never deleted locally; a list poll replaces the list wholesale
- Messages are append-only and keep send order
- Notification detection keeps its own last-seen counts, separate from the
  channel list, so a list poll can never swallow or double a ping
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any, Iterable

from canvas_model import ref_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    id: str
    channel_id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: str = ""
    sender_name: str = ""


@dataclass(frozen=True)
class Channel:
    id: str
    participant_ids: frozenset[str] = frozenset()
    messages: tuple[Message, ...] = ()


@dataclass(frozen=True)
class ChatState:
    channels: tuple[Channel, ...] = ()
    active_channel_id: str | None = None
    # Channel created by the last pop; wins selection until a list poll has it.
    fresh_channel_id: str | None = None
    chat_open: bool = False


# --------------------------- Parsing ---------------------------


def message_from_record(record: Any, channel_id: str = "") -> Message | None:
    if not isinstance(record, dict):
        return None
    msg_id = ref_id(record.get("_id") or record.get("id"))
    if not msg_id:
        return None
    sender = record.get("sender")
    return Message(
        id=msg_id,
        channel_id=ref_id(record.get("channel")) or channel_id,
        sender_id=ref_id(sender),
        receiver_id=ref_id(record.get("receiver")),
        content=str(record.get("content") or ""),
        timestamp=str(record.get("timestamp") or ""),
        sender_name=str(sender.get("username") or "") if isinstance(sender, dict) else "",
    )


def channel_from_record(record: Any) -> Channel | None:
    if not isinstance(record, dict):
        logger.warning("Skipping non-object channel record: %r", record)
        return None
    channel_id = ref_id(record.get("_id") or record.get("id"))
    if not channel_id:
        logger.warning("Skipping channel record without id")
        return None
    messages = []
    for raw in record.get("messages") or []:
        msg = message_from_record(raw, channel_id)
        if msg is None:
            # Unpopulated ids or junk; the message poll will fill these in.
            continue
        messages.append(msg)
    participants = frozenset(ref_id(p) for p in record.get("participants") or [] if ref_id(p))
    return Channel(id=channel_id, participant_ids=participants, messages=tuple(messages))


def message_to_dict(msg: Message) -> dict:
    return {
        "id": msg.id,
        "channel_id": msg.channel_id,
        "sender_id": msg.sender_id,
        "receiver_id": msg.receiver_id,
        "sender_name": msg.sender_name,
        "content": msg.content,
        "timestamp": msg.timestamp,
    }


def channel_to_dict(channel: Channel) -> dict:
    return {
        "id": channel.id,
        "participant_ids": sorted(channel.participant_ids),
        "messages": [message_to_dict(m) for m in channel.messages],
    }


# --------------------------- Helpers ---------------------------


def find_channel(state: ChatState, channel_id: str | None) -> Channel | None:
    if channel_id is None:
        return None
    for c in state.channels:
        if c.id == channel_id:
            return c
    return None


def select_active_channel(
    channel_ids: Iterable[str],
    fresh_id: str | None,
    previous_id: str | None,
) -> str | None:
    """
    Active channel after a list poll, in priority order:
      1. the channel just created by a pop
      2. the previously active channel, if still listed
      3. the first listed channel
      4. None
    """
    ids = list(channel_ids)
    if fresh_id:
        return fresh_id
    if previous_id and previous_id in ids:
        return previous_id
    if ids:
        return ids[0]
    return None


def has_new_incoming(previous_count: int, messages: tuple[Message, ...], local_user_id: str) -> bool:
    """True when the sequence grew and its newest message is from someone else."""
    if len(messages) <= previous_count:
        return False
    newest = messages[-1]
    return bool(newest.sender_id) and newest.sender_id != local_user_id


# --------------------------- Reducers ---------------------------


def apply_channel_list(state: ChatState, channels: Iterable[Channel]) -> ChatState:
    listed = tuple(channels)
    ids = [c.id for c in listed]
    fresh = state.fresh_channel_id
    kept: tuple[Channel, ...] = listed
    if fresh and fresh not in ids:
        # Created after the list was read; keep our copy until the list has it.
        mine = find_channel(state, fresh)
        if mine is not None:
            kept = (mine,) + listed
    active = select_active_channel(ids, fresh, state.active_channel_id)
    return replace(
        state,
        channels=kept,
        active_channel_id=active,
        fresh_channel_id=fresh if fresh and fresh not in ids else None,
    )


def apply_channel_messages(state: ChatState, channel: Channel) -> ChatState:
    if find_channel(state, channel.id) is None:
        return replace(state, channels=state.channels + (channel,))
    patched = []
    for c in state.channels:
        if c.id == channel.id:
            participants = channel.participant_ids or c.participant_ids
            patched.append(replace(c, messages=channel.messages, participant_ids=participants))
        else:
            patched.append(c)
    return replace(state, channels=tuple(patched))


def record_pop_channel(state: ChatState, channel: Channel) -> ChatState:
    rest = tuple(c for c in state.channels if c.id != channel.id)
    return replace(
        state,
        channels=(channel,) + rest,
        active_channel_id=channel.id,
        fresh_channel_id=channel.id,
    )


def append_message(state: ChatState, channel_id: str, message: Message) -> ChatState:
    channel = find_channel(state, channel_id)
    if channel is None:
        logger.debug("Message %s for unknown channel %s dropped", message.id, channel_id)
        return state
    if any(m.id == message.id for m in channel.messages):
        return state
    return apply_channel_messages(state, replace(channel, messages=channel.messages + (message,)))


def select_channel(state: ChatState, channel_id: str) -> ChatState:
    if find_channel(state, channel_id) is None:
        return state
    return replace(state, active_channel_id=channel_id, fresh_channel_id=None)


def set_chat_open(state: ChatState, is_open: bool) -> ChatState:
    return replace(state, chat_open=bool(is_open))


# --------------------------- Notification ---------------------------


class GrowthDetector:
    """
    Last-seen message counts for the active-channel poller.

    observe() returns True exactly once per growth event.  The first time a
    channel is seen, the baseline is the count the channel list already
    showed; with no baseline at all nothing fires.
    """

    def __init__(self) -> None:
        self._seen: dict[str, int] = {}

    def observe(self, channel: Channel, baseline_count: int | None, local_user_id: str) -> bool:
        previous = self._seen.get(channel.id, baseline_count)
        self._seen[channel.id] = len(channel.messages)
        if previous is None:
            return False
        return has_new_incoming(previous, channel.messages, local_user_id)

    def seen_count(self, channel_id: str) -> int | None:
        return self._seen.get(channel_id)
