"""
Bubble canvas client runtime.

Keeps a shared bubble canvas and the user's chat channels usable without a
push channel:
- local force simulation every tick
- bubble list polled and reconciled around in-progress drags
- channel list and open-channel messages polled, with a ping on new
  incoming messages
- pop flow: opening someone else's bubble starts a channel and deletes it
- local control server for a rendering front end
"""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from math import isfinite
from socketserver import ThreadingMixIn
from typing import Any, Callable

import numpy as np

import config
import notifier
import physics
from canvas_model import Bubble, Vec2, bubble_from_record, bubble_to_dict, find_bubble
from chat_state import (
    ChatState,
    GrowthDetector,
    append_message,
    apply_channel_list,
    apply_channel_messages,
    channel_from_record,
    channel_to_dict,
    find_channel,
    message_from_record,
    record_pop_channel,
    select_channel,
    set_chat_open,
)
from drag_controller import CommitPositionAction, DragController, PopAction
from reconciler import diff_ids, reconcile
from scheduler import CancelToken, DeferredCalls, Mailbox, PeriodicJob, WriteWorker
from store_client import (
    StoreClient,
    StoreError,
    TransportError,
    UnauthorizedError,
    user_id_from_token,
)


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


class CanvasRuntime:
    def __init__(
        self,
        client: StoreClient | None = None,
        user_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.client = client if client is not None else StoreClient()
        self.user_id = user_id or config.USER_ID or user_id_from_token(getattr(self.client, "token", ""))
        self.clock = clock
        self.rng = rng if rng is not None else np.random.default_rng()
        self.running = True
        self._wake = threading.Event()

        self.bubbles: tuple[Bubble, ...] = ()
        self.forces: dict[str, Vec2] = {}
        self.chat = ChatState()
        self.ticks = 0
        self._scale_warned = False

        self.width = float(config.SCREEN_WIDTH)
        self.height = float(config.SCREEN_HEIGHT)
        self.sim_cfg = self._build_sim_cfg()

        self.drag = DragController(release_timeout_sec=config.DRAG_RELEASE_TIMEOUT_SEC)
        self.growth = GrowthDetector()

        self.mailbox = Mailbox()
        self.deferred = DeferredCalls(clock=self.clock)
        self.writer = WriteWorker(max_queue=config.WRITE_QUEUE_SIZE)
        # Tags results of one-shot actions; cancelled on teardown.
        self.session = CancelToken("session")

        self.jobs: dict[str, PeriodicJob] = {
            "bubbles": PeriodicJob("bubbles", config.BUBBLE_POLL_INTERVAL_SEC, self._poll_bubbles),
            "channels": PeriodicJob("channels", config.CHANNEL_POLL_INTERVAL_SEC, self._poll_channels),
            "messages": PeriodicJob("messages", config.MESSAGE_POLL_INTERVAL_SEC, self._poll_active_messages),
        }

        # Sources whose transport failure has already been surfaced.
        self._failing: set[str] = set()
        self.last_error = ""

    # ------------------ Config/State ------------------

    def _build_sim_cfg(self) -> physics.SimulationConfig:
        return physics.SimulationConfig(
            bubble_radius=config.BUBBLE_RADIUS,
            attraction_strength=config.ATTRACTION_STRENGTH,
            repulsion_strength=config.REPULSION_STRENGTH,
            overlap_failsafe_strength=config.OVERLAP_FAILSAFE_STRENGTH,
            damping=config.DAMPING,
            max_force=config.MAX_FORCE,
            width=self.width,
            height=self.height,
            max_bubbles=config.MAX_SIMULATED_BUBBLES,
        )

    def resize(self, width: float, height: float) -> None:
        self.width = float(width)
        self.height = float(height)
        self.sim_cfg = self._build_sim_cfg()

    # ------------------ Lifecycle ------------------

    def start(self) -> None:
        logger.info("Starting canvas runtime for user %s", self.user_id or "(unknown)")
        if not self.user_id:
            logger.warning("No user id (set USER_ID or AUTH_TOKEN); channel polling will idle")
        self.writer.start()
        for job in self.jobs.values():
            job.start()

    def stop(self, reason: str) -> None:
        """Tear down: stop every job and drop any result still in flight."""
        self.running = False
        self._wake.set()
        for job in self.jobs.values():
            job.stop(reason)
        self.session.cancel()
        self.deferred.clear()
        self.bubbles = self.drag.release_all(self.bubbles)
        self.writer.stop()
        logger.info("Canvas runtime stopped: %s", reason)

    # ------------------ Store error policy ------------------

    # Called from poller and writer threads.  Bookkeeping is posted to the
    # owner thread; only the notifier I/O runs on the writer.

    def _handle_store_error(self, source: str, err: StoreError) -> None:
        """Log and swallow.  Never re-raises into a loop."""
        if not isinstance(err, (UnauthorizedError, TransportError)):
            logger.warning("%s failed (%s): %s", source, err.kind, err)
        self.mailbox.post(self.session, f"{source} error", lambda: self._record_failure(source, err))

    def _mark_ok(self, source: str) -> None:
        # Unlocked read; the owner re-checks before clearing.
        if source in self._failing:
            self.mailbox.post(self.session, f"{source} ok", lambda: self._record_recovery(source))

    def _record_failure(self, source: str, err: StoreError) -> None:
        self.last_error = f"{source}: {err}"
        details = f"{source}: {err}"
        if isinstance(err, UnauthorizedError):
            job = self.jobs.get(source)
            if job is not None:
                job.stop("unauthorized", join_timeout=0)
            self.writer.submit("notify", lambda: notifier.notify_error("unauthorized", details))
            return
        if isinstance(err, TransportError):
            if source in self._failing:
                logger.debug("%s still failing: %s", source, err)
                return
            self._failing.add(source)
            self.writer.submit("notify", lambda: notifier.notify_error("transport", details))

    def _record_recovery(self, source: str) -> None:
        if source not in self._failing:
            return
        self._failing.discard(source)
        self.writer.submit("notify", lambda: notifier.notify_recovered(source))

    # ------------------ Pollers (background threads) ------------------

    def _poll_bubbles(self, token: CancelToken) -> None:
        try:
            records = self.client.list_bubbles()
        except StoreError as e:
            self._handle_store_error("bubbles", e)
            return
        self._mark_ok("bubbles")
        snapshot = [b for b in (bubble_from_record(r) for r in records) if b is not None]
        self.mailbox.post(token, "bubbles", lambda: self._apply_bubble_snapshot(snapshot))

    def _poll_channels(self, token: CancelToken) -> None:
        if not self.user_id:
            return
        try:
            records = self.client.list_user_channels(self.user_id)
        except StoreError as e:
            self._handle_store_error("channels", e)
            return
        self._mark_ok("channels")
        channels = [c for c in (channel_from_record(r) for r in records) if c is not None]
        self.mailbox.post(token, "channels", lambda: self._apply_channel_list(channels))

    def _poll_active_messages(self, token: CancelToken) -> None:
        chat = self.chat
        channel_id = chat.active_channel_id
        if not chat.chat_open or not channel_id:
            return
        try:
            record = self.client.get_channel(channel_id)
        except StoreError as e:
            self._handle_store_error("messages", e)
            return
        self._mark_ok("messages")
        channel = channel_from_record(record)
        if channel is None:
            return
        self.mailbox.post(token, "messages", lambda: self._apply_active_messages(channel))

    # ------------------ Appliers (owner thread) ------------------

    def _apply_bubble_snapshot(self, snapshot: list[Bubble]) -> None:
        merged = reconcile(self.bubbles, snapshot, self.drag.held_ids)
        added, removed = diff_ids(self.bubbles, merged)
        if added or removed:
            logger.info("Bubbles reconciled: +%d -%d (%d total)", len(added), len(removed), len(merged))
        self.bubbles = merged
        self.drag.forget_missing(merged)

    def _apply_channel_list(self, channels: list) -> None:
        before = self.chat.active_channel_id
        self.chat = apply_channel_list(self.chat, channels)
        if self.chat.active_channel_id != before:
            logger.info("Active channel %s -> %s", before, self.chat.active_channel_id)

    def _apply_active_messages(self, channel) -> None:
        known = find_channel(self.chat, channel.id)
        baseline = len(known.messages) if known is not None else None
        self.chat = apply_channel_messages(self.chat, channel)
        fired = self.growth.observe(channel, baseline, self.user_id)
        if not fired:
            return
        if channel.id != self.chat.active_channel_id or not self.chat.chat_open:
            # Switched away while the request was in flight.
            return
        newest = channel.messages[-1]
        self.writer.submit(
            "ping",
            lambda: notifier.notify_new_message(channel.id, newest.sender_name, newest.content),
        )

    # ------------------ Tick ------------------

    def tick(self, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        self.mailbox.drain()
        self.deferred.run_due(now)
        self.bubbles = self.drag.expire_stale(self.bubbles, now)
        result = physics.step(self.bubbles, self.sim_cfg, self.rng)
        if result.over_limit and not self._scale_warned:
            self._scale_warned = True
            logger.warning(
                "Simulating %d bubbles (limit %d): pairwise forces are O(n^2) per tick",
                len(result.bubbles), self.sim_cfg.max_bubbles,
            )
        self.bubbles = result.bubbles
        self.forces = result.forces
        self.ticks += 1

    def run_forever(self) -> None:
        period = 1.0 / max(1.0, float(config.TICK_HZ))
        logger.info("Entering tick loop (%.0f Hz)", 1.0 / period)
        while self.running:
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                logger.exception("Tick error: %s", e)
            elapsed = time.monotonic() - started
            self._wake.wait(max(0.0, period - elapsed))

    # ------------------ Bubble actions ------------------

    def create_bubble(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        extent = float(config.NEW_BUBBLE_SPAWN_EXTENT)
        position = {
            "x": float(self.rng.uniform(0.0, extent)),
            "y": float(self.rng.uniform(0.0, extent)),
        }
        colors = config.BUBBLE_COLORS
        color = colors[int(self.rng.integers(len(colors)))]

        def _write() -> None:
            try:
                record = self.client.create_bubble(text, position, color)
            except StoreError as e:
                self._handle_store_error("create_bubble", e)
                return
            self._mark_ok("create_bubble")
            bubble = bubble_from_record(record)
            if bubble is not None:
                self.mailbox.post(self.session, "create_bubble", lambda: self._add_bubble(bubble))

        self.writer.submit("create_bubble", _write)
        return True

    def _add_bubble(self, bubble: Bubble) -> None:
        if find_bubble(self.bubbles, bubble.id) is None:
            self.bubbles = self.bubbles + (bubble,)

    def drag_start(self, bubble_id: str) -> None:
        self.bubbles = self.drag.begin(self.bubbles, bubble_id, self.clock())

    def drag_move(self, bubble_id: str, x: float, y: float) -> None:
        self.bubbles = self.drag.move(self.bubbles, bubble_id, Vec2(float(x), float(y)), self.clock())

    def drag_end(self, bubble_id: str, x: float, y: float) -> None:
        self.bubbles, action = self.drag.release(self.bubbles, bubble_id, Vec2(float(x), float(y)), self.clock())
        if action is not None:
            self._commit_position(action)

    def release_all_holds(self) -> None:
        """Window lost focus: drop every hold without committing."""
        self.bubbles = self.drag.release_all(self.bubbles)

    def _commit_position(self, action: CommitPositionAction) -> None:
        position = {"x": action.position.x, "y": action.position.y}

        def _write() -> None:
            try:
                self.client.update_bubble_position(action.bubble_id, position)
            except StoreError as e:
                # Not retried; the next drag sends a fresh position.
                self._handle_store_error("update_position", e)
                return
            self._mark_ok("update_position")

        self.writer.submit(f"update_position {action.bubble_id}", _write)

    def open_bubble(self, bubble_id: str) -> bool:
        """Double-open.  Pops after the animation delay if the bubble is poppable."""
        action = self.drag.open_bubble(self.bubbles, bubble_id, self.user_id)
        if action is None:
            return False
        self.deferred.call_later(config.POP_ANIMATION_DELAY_SEC, f"pop {bubble_id}", lambda: self._pop(action))
        return True

    def _pop(self, action: PopAction) -> None:
        """Start a channel with the bubble's owner and delete the bubble."""

        def _create_channel() -> None:
            try:
                record = self.client.create_channel(action.creator_id, action.text, self.user_id)
            except StoreError as e:
                self._handle_store_error("create_channel", e)
                return
            self._mark_ok("create_channel")
            channel = channel_from_record(record)
            if channel is None:
                return
            self.mailbox.post(self.session, "pop_channel", lambda: self._record_pop_channel(channel))

        def _delete_bubble() -> None:
            try:
                self.client.delete_bubble(action.bubble_id)
            except StoreError as e:
                self._handle_store_error("delete_bubble", e)
                return
            self._mark_ok("delete_bubble")

        # Separate tasks: a failed channel create does not block the delete.
        self.writer.submit("create_channel", _create_channel)
        self.writer.submit(f"delete_bubble {action.bubble_id}", _delete_bubble)

    def _record_pop_channel(self, channel) -> None:
        self.chat = record_pop_channel(self.chat, channel)
        logger.info("Channel %s opened by pop", channel.id)
        self._refresh_now("channels")

    # ------------------ Chat actions ------------------

    def send_message(self, content: str) -> bool:
        channel_id = self.chat.active_channel_id
        content = content or ""
        if not channel_id or not content.strip():
            return False

        def _write() -> None:
            try:
                record = self.client.send_message(channel_id, content)
            except StoreError as e:
                self._handle_store_error("send_message", e)
                return
            self._mark_ok("send_message")
            msg = message_from_record(record, channel_id)
            if msg is not None:
                self.mailbox.post(self.session, "send_message", lambda: self._append_message(channel_id, msg))

        self.writer.submit("send_message", _write)
        return True

    def _append_message(self, channel_id: str, msg) -> None:
        self.chat = append_message(self.chat, channel_id, msg)

    def select_channel(self, channel_id: str) -> None:
        self.chat = select_channel(self.chat, channel_id)
        self._refresh_now("messages")

    def set_chat_open(self, is_open: bool) -> None:
        self.chat = set_chat_open(self.chat, is_open)
        if is_open:
            self._refresh_now("messages")

    def _refresh_now(self, job_name: str) -> None:
        """
        Run one cycle of a job on the writer thread instead of waiting for its
        interval.  run_once() waits out any cycle already in flight on the
        job's own thread, so results still post in request order.
        """
        job = self.jobs[job_name]
        if job.token.cancelled:
            return
        self.writer.submit(f"refresh {job_name}", job.run_once)

    # ------------------ Control actions ------------------

    def dispatch_action(self, action: str, params: dict) -> None:
        """Apply a user action from the control server (owner thread)."""
        if action == "create_bubble":
            self.create_bubble(params["text"])
        elif action == "drag_start":
            self.drag_start(params["bubble_id"])
        elif action == "drag_move":
            self.drag_move(params["bubble_id"], params["x"], params["y"])
        elif action == "drag_end":
            self.drag_end(params["bubble_id"], params["x"], params["y"])
        elif action == "release_all":
            self.release_all_holds()
        elif action == "open_bubble":
            self.open_bubble(params["bubble_id"])
        elif action == "send_message":
            self.send_message(params["content"])
        elif action == "select_channel":
            self.select_channel(params["channel_id"])
        elif action == "set_chat_open":
            self.set_chat_open(params["open"])
        elif action == "resize":
            self.resize(params["width"], params["height"])
        else:
            logger.warning("Unknown action %s ignored", action)

    def status_payload(self) -> dict:
        bubbles = []
        forces = self.forces
        for b in self.bubbles:
            row = bubble_to_dict(b)
            f = forces.get(b.id)
            row["force"] = {"x": f.x, "y": f.y} if f is not None else {"x": 0.0, "y": 0.0}
            row["popping"] = self.drag.is_popping(b.id)
            bubbles.append(row)
        chat = self.chat
        return {
            "user_id": self.user_id,
            "running": self.running,
            "ticks": self.ticks,
            "canvas": {"width": self.width, "height": self.height, "radius": self.sim_cfg.bubble_radius},
            "bubbles": bubbles,
            "chat": {
                "open": chat.chat_open,
                "active_channel_id": chat.active_channel_id,
                "channels": [channel_to_dict(c) for c in chat.channels],
            },
            "jobs": {name: job.running for name, job in self.jobs.items()},
            "pending_writes": len(self.writer),
            "last_error": self.last_error,
        }


_RUNTIME: CanvasRuntime | None = None

_TEXT_ACTIONS = {
    "create_bubble": "text",
    "send_message": "content",
    "drag_start": "bubble_id",
    "open_bubble": "bubble_id",
    "select_channel": "channel_id",
}


def parse_action(body: dict) -> tuple[str, dict]:
    """
    Validate a control request body.  Returns (action, params).

    Raises ValueError with a user-facing message on bad input.
    """
    action = str(body.get("action") or "").strip()
    params: dict[str, Any] = {}
    if action in _TEXT_ACTIONS:
        key = _TEXT_ACTIONS[action]
        value = body.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{key} required")
        params[key] = value
    elif action in ("drag_move", "drag_end"):
        bubble_id = body.get("bubble_id")
        if not isinstance(bubble_id, str) or not bubble_id:
            raise ValueError("bubble_id required")
        params["bubble_id"] = bubble_id
        params["x"], params["y"] = _finite_pair(body, "x", "y")
    elif action == "resize":
        params["width"], params["height"] = _finite_pair(body, "width", "height")
        if params["width"] <= 0 or params["height"] <= 0:
            raise ValueError("width and height must be positive")
    elif action == "set_chat_open":
        params["open"] = bool(body.get("open"))
    elif action == "release_all":
        pass
    else:
        raise ValueError(f"unknown action: {action}")
    return action, params


def _finite_pair(body: dict, a: str, b: str) -> tuple[float, float]:
    try:
        first = float(body.get(a))
        second = float(body.get(b))
    except (TypeError, ValueError):
        raise ValueError(f"invalid {a}/{b}") from None
    if not (isfinite(first) and isfinite(second)):
        raise ValueError(f"invalid {a}/{b}")
    return first, second


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class ControlHandler(BaseHTTPRequestHandler):
    def log_message(self, fmt: str, *args: Any) -> None:
        logger.debug("HTTP %s - %s", self.address_string(), fmt % args)

    def _send_json(self, data: dict, code: int = 200) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _read_json(self) -> dict:
        n = int(self.headers.get("Content-Length", "0") or "0")
        if n <= 0:
            return {}
        raw = self.rfile.read(n)
        try:
            body = json.loads(raw.decode("utf-8"))
        except Exception as exc:
            raise ValueError("invalid request body") from exc
        if not isinstance(body, dict):
            raise ValueError("invalid request body")
        return body

    def do_GET(self) -> None:  # noqa: N802
        if self.path.startswith("/api/state"):
            if _RUNTIME is None:
                self._send_json({"error": "runtime not ready"}, 503)
                return
            self._send_json(_RUNTIME.status_payload())
            return
        self._send_json({"error": "not found"}, 404)

    def do_POST(self) -> None:  # noqa: N802
        if not self.path.startswith("/api/action"):
            self._send_json({"ok": False, "message": "not found"}, 404)
            return
        rt = _RUNTIME
        if rt is None:
            self._send_json({"ok": False, "message": "runtime not ready"}, 503)
            return
        try:
            action, params = parse_action(self._read_json())
        except ValueError as e:
            self._send_json({"ok": False, "message": str(e)}, 400)
            return
        # Applied by the owner thread on its next tick.
        rt.mailbox.post(rt.session, f"action {action}", lambda: rt.dispatch_action(action, params))
        self._send_json({"ok": True, "queued": action}, 202)


def start_control_server() -> ThreadingHTTPServer | None:
    if config.CONTROL_PORT <= 0:
        return None
    server = ThreadingHTTPServer((config.CONTROL_HOST, int(config.CONTROL_PORT)), ControlHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="control-server")
    thread.start()
    logger.info("Control server started on %s:%s", config.CONTROL_HOST, config.CONTROL_PORT)
    return server


def run() -> None:
    global _RUNTIME
    setup_logging()
    config.print_banner()

    rt = CanvasRuntime()
    _RUNTIME = rt

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        rt.running = False
        rt._wake.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    server = None
    try:
        rt.start()
        server = start_control_server()
        rt.run_forever()
    finally:
        if server is not None:
            try:
                server.shutdown()
            except Exception as e:
                logger.debug("Control server shutdown: %s", e)
        rt.stop("process exit")


if __name__ == "__main__":
    run()
