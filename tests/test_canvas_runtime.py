import threading
import time
import unittest
from dataclasses import replace
from unittest import mock

import numpy as np

import canvas_runtime
import config
from canvas_model import find_bubble
from chat_state import find_channel
from store_client import TransportError, UnauthorizedError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeStore:
    """Records every call; returns canned records."""

    def __init__(self):
        self.token = ""
        self.bubbles = []
        self.channels = []
        self.channel_detail = {}
        self.calls = []
        self.fail_with = {}

    def _maybe_fail(self, name):
        err = self.fail_with.get(name)
        if err is not None:
            raise err

    def list_bubbles(self):
        self.calls.append(("list_bubbles",))
        self._maybe_fail("list_bubbles")
        return list(self.bubbles)

    def create_bubble(self, text, position, color):
        self.calls.append(("create_bubble", text, position, color))
        self._maybe_fail("create_bubble")
        return {"_id": "new1", "text": text, "position": position, "color": color, "creator": "A"}

    def update_bubble_position(self, bubble_id, position):
        self.calls.append(("update_bubble_position", bubble_id, position))
        self._maybe_fail("update_bubble_position")
        return {"_id": bubble_id}

    def delete_bubble(self, bubble_id):
        self.calls.append(("delete_bubble", bubble_id))
        self._maybe_fail("delete_bubble")
        self.bubbles = [b for b in self.bubbles if b["_id"] != bubble_id]
        return {"msg": "Bubble removed"}

    def create_channel(self, receiver_id, content, sender_id):
        self.calls.append(("create_channel", receiver_id, content, sender_id))
        self._maybe_fail("create_channel")
        return {
            "_id": "c-pop",
            "participants": [sender_id, receiver_id],
            "messages": [
                {"_id": "m1", "sender": sender_id, "receiver": receiver_id, "content": content},
            ],
        }

    def send_message(self, channel_id, content):
        self.calls.append(("send_message", channel_id, content))
        self._maybe_fail("send_message")
        return {"_id": "m-sent", "sender": "A", "receiver": "B", "content": content}

    def get_channel(self, channel_id):
        self.calls.append(("get_channel", channel_id))
        self._maybe_fail("get_channel")
        return self.channel_detail[channel_id]

    def list_user_channels(self, user_id):
        self.calls.append(("list_user_channels", user_id))
        self._maybe_fail("list_user_channels")
        return list(self.channels)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


def _bubble_record(bid, creator, x=600.0, y=400.0, text="hi"):
    return {"_id": bid, "text": text, "position": {"x": x, "y": y}, "color": "#a7c7e7", "creator": creator}


def _message_record(mid, sender, receiver, content="yo"):
    return {"_id": mid, "sender": sender, "receiver": receiver, "content": content}


class CanvasRuntimeTestBase(unittest.TestCase):
    def setUp(self):
        self.store = FakeStore()
        self.clock = FakeClock()
        self.rt = canvas_runtime.CanvasRuntime(
            client=self.store, user_id="A", clock=self.clock, rng=np.random.default_rng(3)
        )

    def poll(self, name):
        job = self.rt.jobs[name]
        job.run_once()
        self.rt.mailbox.drain()

    def flush_writes(self):
        # Writes can enqueue follow-ups (refreshes); run until quiet.
        for _ in range(5):
            self.rt.writer.run_pending()
            self.rt.mailbox.drain()

    def tick_after(self, seconds):
        self.clock.now += seconds
        self.rt.tick(self.clock.now)


class PopFlowTests(CanvasRuntimeTestBase):
    def test_pop_creates_channel_and_deletes_bubble(self):
        self.store.bubbles = [_bubble_record("b1", "B", text="hi")]
        self.poll("bubbles")

        self.assertTrue(self.rt.open_bubble("b1"))
        self.tick_after(0.1)
        self.assertEqual(self.store.calls, [("list_bubbles",)])

        self.tick_after(0.25)
        self.flush_writes()

        self.assertEqual(self.store.called("create_channel"), [("create_channel", "B", "hi", "A")])
        self.assertEqual(self.store.called("delete_bubble"), [("delete_bubble", "b1")])

        chat = self.rt.chat
        self.assertEqual(chat.active_channel_id, "c-pop")
        channel = find_channel(chat, "c-pop")
        self.assertEqual(channel.participant_ids, frozenset({"A", "B"}))
        first = channel.messages[0]
        self.assertEqual((first.sender_id, first.receiver_id, first.content), ("A", "B", "hi"))
        # Channel list refreshed right after the pop.
        self.assertTrue(self.store.called("list_user_channels"))

        # The bubble only leaves the canvas once the store stops listing it.
        self.assertIsNotNone(find_bubble(self.rt.bubbles, "b1"))
        self.poll("bubbles")
        self.assertIsNone(find_bubble(self.rt.bubbles, "b1"))

    def test_own_bubble_does_not_pop(self):
        self.store.bubbles = [_bubble_record("mine", "A")]
        self.poll("bubbles")
        self.assertFalse(self.rt.open_bubble("mine"))
        self.tick_after(1.0)
        self.flush_writes()
        self.assertEqual(self.store.called("create_channel"), [])
        self.assertEqual(self.store.called("delete_bubble"), [])

    def test_failed_channel_create_still_deletes(self):
        self.store.bubbles = [_bubble_record("b1", "B")]
        self.store.fail_with["create_channel"] = TransportError("refused")
        self.poll("bubbles")
        self.rt.open_bubble("b1")
        self.tick_after(0.5)
        with mock.patch("canvas_runtime.notifier.notify_error"):
            self.flush_writes()
        self.assertEqual(self.store.called("delete_bubble"), [("delete_bubble", "b1")])
        self.assertIsNone(self.rt.chat.active_channel_id)

    def test_pop_listed_later_stays_active(self):
        self.store.bubbles = [_bubble_record("b1", "B")]
        self.store.channels = [{"_id": "older", "participants": ["A", "C"], "messages": []}]
        self.poll("bubbles")
        self.poll("channels")
        self.assertEqual(self.rt.chat.active_channel_id, "older")

        self.rt.open_bubble("b1")
        self.tick_after(0.5)
        self.flush_writes()
        self.assertEqual(self.rt.chat.active_channel_id, "c-pop")
        self.assertEqual([c.id for c in self.rt.chat.channels], ["c-pop", "older"])


class DragFlowTests(CanvasRuntimeTestBase):
    def test_drag_survives_poll_and_commits_on_release(self):
        self.store.bubbles = [_bubble_record("b1", "B", x=600, y=400)]
        self.poll("bubbles")

        self.rt.drag_start("b1")
        self.rt.drag_move("b1", 900, 500)
        self.store.bubbles = [_bubble_record("b1", "B", x=10, y=10)]
        self.poll("bubbles")
        self.tick_after(1 / 60)

        b1 = find_bubble(self.rt.bubbles, "b1")
        self.assertTrue(b1.held)
        self.assertEqual((b1.position.x, b1.position.y), (900.0, 500.0))

        self.rt.drag_end("b1", 910, 505)
        self.flush_writes()
        self.assertEqual(
            self.store.called("update_bubble_position"),
            [("update_bubble_position", "b1", {"x": 910.0, "y": 505.0})],
        )
        self.assertFalse(find_bubble(self.rt.bubbles, "b1").held)

    def test_lost_release_times_out(self):
        self.store.bubbles = [_bubble_record("b1", "B")]
        self.poll("bubbles")
        self.rt.drag_start("b1")
        with self.assertLogs("drag_controller", level="WARNING"):
            self.tick_after(config.DRAG_RELEASE_TIMEOUT_SEC + 1)
        self.assertFalse(find_bubble(self.rt.bubbles, "b1").held)
        self.flush_writes()
        self.assertEqual(self.store.called("update_bubble_position"), [])

    def test_release_all_holds(self):
        self.store.bubbles = [_bubble_record("b1", "B")]
        self.poll("bubbles")
        self.rt.drag_start("b1")
        self.rt.release_all_holds()
        self.assertEqual(self.rt.drag.held_ids, frozenset())


class BubbleCreationTests(CanvasRuntimeTestBase):
    def test_create_bubble_posts_and_adds_locally(self):
        self.assertTrue(self.rt.create_bubble("  hello  "))
        self.flush_writes()
        (_, text, position, color), = self.store.called("create_bubble")
        self.assertEqual(text, "hello")
        self.assertTrue(0.0 <= position["x"] <= config.NEW_BUBBLE_SPAWN_EXTENT)
        self.assertTrue(0.0 <= position["y"] <= config.NEW_BUBBLE_SPAWN_EXTENT)
        self.assertIn(color, config.BUBBLE_COLORS)
        self.assertIsNotNone(find_bubble(self.rt.bubbles, "new1"))

    def test_blank_text_is_rejected(self):
        self.assertFalse(self.rt.create_bubble("   "))
        self.flush_writes()
        self.assertEqual(self.store.called("create_bubble"), [])


class MessagePollTests(CanvasRuntimeTestBase):
    def setUp(self):
        super().setUp()
        two = [_message_record("m1", "A", "B"), _message_record("m2", "B", "A")]
        self.store.channels = [{"_id": "c1", "participants": ["A", "B"], "messages": two}]
        self.poll("channels")
        self.rt.set_chat_open(True)
        self.store.channel_detail["c1"] = {"_id": "c1", "participants": ["A", "B"], "messages": two}

    def test_no_poll_when_chat_closed(self):
        self.rt.set_chat_open(False)
        self.store.calls.clear()
        self.poll("messages")
        self.assertEqual(self.store.called("get_channel"), [])

    def test_incoming_message_pings_once(self):
        self.flush_writes()
        self.store.channel_detail["c1"]["messages"] = self.store.channel_detail["c1"]["messages"] + [
            _message_record("m3", "B", "A", "are you there")
        ]
        with mock.patch("canvas_runtime.notifier.notify_new_message") as ping:
            self.poll("messages")
            self.flush_writes()
            self.poll("messages")
            self.flush_writes()
        ping.assert_called_once()
        self.assertEqual(ping.call_args[0][0], "c1")
        self.assertEqual(ping.call_args[0][2], "are you there")
        self.assertEqual(len(find_channel(self.rt.chat, "c1").messages), 3)

    def test_own_message_is_silent(self):
        self.flush_writes()
        self.store.channel_detail["c1"]["messages"] = self.store.channel_detail["c1"]["messages"] + [
            _message_record("m3", "A", "B")
        ]
        with mock.patch("canvas_runtime.notifier.notify_new_message") as ping:
            self.poll("messages")
            self.flush_writes()
        ping.assert_not_called()

    def test_send_message_echoes_locally(self):
        self.assertTrue(self.rt.send_message("hello back"))
        self.flush_writes()
        self.assertEqual(self.store.called("send_message"), [("send_message", "c1", "hello back")])
        ids = [m.id for m in find_channel(self.rt.chat, "c1").messages]
        self.assertEqual(ids[-1], "m-sent")


class ErrorPolicyTests(CanvasRuntimeTestBase):
    def test_unauthorized_stops_the_job(self):
        self.store.fail_with["list_user_channels"] = UnauthorizedError("HTTP 401", 401)
        with mock.patch("canvas_runtime.notifier.notify_error") as notify:
            self.poll("channels")
            self.flush_writes()
        notify.assert_called_once()
        self.assertEqual(notify.call_args[0][0], "unauthorized")
        self.assertTrue(self.rt.jobs["channels"].token.cancelled)
        self.assertFalse(self.rt.jobs["bubbles"].token.cancelled)

    def test_transport_failure_surfaced_once_per_streak(self):
        self.store.fail_with["list_bubbles"] = TransportError("refused")
        with mock.patch("canvas_runtime.notifier.notify_error") as notify, \
                mock.patch("canvas_runtime.notifier.notify_recovered") as recovered:
            self.poll("bubbles")
            self.poll("bubbles")
            self.flush_writes()
            self.assertEqual(notify.call_count, 1)
            del self.store.fail_with["list_bubbles"]
            self.poll("bubbles")
            self.flush_writes()
        recovered.assert_called_once_with("bubbles")

    def test_failure_bookkeeping_waits_for_owner_thread(self):
        self.store.fail_with["list_bubbles"] = TransportError("refused")
        job = self.rt.jobs["bubbles"]
        # Two failed cycles land before the owner drains.
        job.run_once()
        job.run_once()
        self.assertEqual(self.rt._failing, set())
        self.assertEqual(self.rt.last_error, "")
        with mock.patch("canvas_runtime.notifier.notify_error") as notify:
            self.rt.mailbox.drain()
            self.flush_writes()
        self.assertEqual(self.rt._failing, {"bubbles"})
        self.assertIn("refused", self.rt.last_error)
        notify.assert_called_once()

    def test_results_after_stop_are_discarded(self):
        self.store.bubbles = [_bubble_record("b1", "B")]
        job = self.rt.jobs["bubbles"]
        job.run_once()
        self.rt.stop("test")
        self.rt.mailbox.drain()
        self.assertEqual(self.rt.bubbles, ())


class OverlappingRefreshTests(CanvasRuntimeTestBase):
    def test_refresh_during_slow_poll_pings_once(self):
        two = [_message_record("m1", "A", "B"), _message_record("m2", "B", "A")]
        self.store.channels = [{"_id": "c1", "participants": ["A", "B"], "messages": two}]
        self.store.channel_detail["c1"] = {"_id": "c1", "participants": ["A", "B"], "messages": two}
        self.poll("channels")
        self.rt.set_chat_open(True)
        self.flush_writes()

        entered = threading.Event()
        release = threading.Event()
        real_get_channel = self.store.get_channel
        slow_calls = []

        def get_channel(channel_id):
            record = real_get_channel(channel_id)
            if not slow_calls:
                # The periodic cycle read the 2-message snapshot, then stalls.
                slow_calls.append(record)
                record = {**record, "messages": list(record["messages"])}
                entered.set()
                release.wait(5.0)
            return record

        self.store.get_channel = get_channel
        job = self.rt.jobs["messages"]
        periodic = threading.Thread(target=job.run_once)
        periodic.start()
        self.assertTrue(entered.wait(5.0))

        self.store.channel_detail["c1"] = {
            "_id": "c1",
            "participants": ["A", "B"],
            "messages": two + [_message_record("m3", "B", "A", "new")],
        }
        self.rt.select_channel("c1")
        refresh = threading.Thread(target=self.rt.writer.run_pending)
        refresh.start()
        time.sleep(0.1)
        release.set()
        periodic.join(5.0)
        refresh.join(5.0)

        with mock.patch("canvas_runtime.notifier.notify_new_message") as ping:
            self.rt.mailbox.drain()
            self.flush_writes()
            self.assertEqual(len(find_channel(self.rt.chat, "c1").messages), 3)
            self.poll("messages")
            self.flush_writes()
        ping.assert_called_once()
        self.assertEqual(len(find_channel(self.rt.chat, "c1").messages), 3)


class ScaleWarningTests(CanvasRuntimeTestBase):
    def test_over_limit_warns_once_per_runtime(self):
        self.store.bubbles = [_bubble_record("b1", "B", x=300), _bubble_record("b2", "B", x=700)]
        self.poll("bubbles")
        self.rt.sim_cfg = replace(self.rt.sim_cfg, max_bubbles=1)
        with self.assertLogs("canvas_runtime", level="WARNING") as logs:
            self.tick_after(1 / 60)
            self.tick_after(1 / 60)
        self.assertEqual(sum("O(n^2)" in line for line in logs.output), 1)

        other = canvas_runtime.CanvasRuntime(client=self.store, user_id="A", clock=self.clock)
        other.bubbles = self.rt.bubbles
        other.sim_cfg = self.rt.sim_cfg
        with self.assertLogs("canvas_runtime", level="WARNING"):
            other.tick(self.clock.now)


class ControlActionTests(CanvasRuntimeTestBase):
    def test_parse_action_validates(self):
        self.assertEqual(
            canvas_runtime.parse_action({"action": "drag_move", "bubble_id": "b1", "x": "5", "y": 6}),
            ("drag_move", {"bubble_id": "b1", "x": 5.0, "y": 6.0}),
        )
        for bad in (
            {"action": "nope"},
            {"action": "create_bubble", "text": "   "},
            {"action": "drag_end", "bubble_id": "b1", "x": "nan", "y": 1},
            {"action": "resize", "width": 0, "height": 100},
        ):
            with self.subTest(body=bad):
                with self.assertRaises(ValueError):
                    canvas_runtime.parse_action(bad)

    def test_dispatch_resize_updates_simulation_bounds(self):
        action, params = canvas_runtime.parse_action({"action": "resize", "width": 1920, "height": 1080})
        self.rt.dispatch_action(action, params)
        self.assertEqual((self.rt.sim_cfg.width, self.rt.sim_cfg.height), (1920.0, 1080.0))

    def test_status_payload_shape(self):
        self.store.bubbles = [_bubble_record("b1", "B")]
        self.poll("bubbles")
        self.tick_after(1 / 60)
        payload = self.rt.status_payload()
        self.assertEqual(payload["user_id"], "A")
        self.assertEqual(payload["bubbles"][0]["id"], "b1")
        self.assertIn("force", payload["bubbles"][0])
        self.assertFalse(payload["chat"]["open"])


if __name__ == "__main__":
    unittest.main()
