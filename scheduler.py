"""
scheduler.py -- Periodic jobs, the owner-thread mailbox, and the write worker.

THREADING MODEL:
  One owner thread (the tick loop) holds all canvas and chat state.
  Pollers and the write worker run in background threads and only do I/O.
  Anything they learn goes back through the Mailbox as a callable; the owner
  runs those callables in FIFO order during its tick.  Shared state therefore
  has exactly one writer.

  A job's cycles never overlap, even when an extra cycle is requested from
  another thread: run_once() holds the job's cycle lock across the request
  and the post, so one poller's responses reach the Mailbox (and are applied)
  in the order its requests were made.

CANCELLATION:
  Each job owns a CancelToken and tags every result it posts with it.
  Stopping a job cancels the token, so a response that lands afterwards is
  dropped by the mailbox instead of applied.
"""

from __future__ import annotations

import collections
import heapq
import itertools
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self, name: str = "") -> None:
        self.name = name
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout*; returns True early if cancelled."""
        return self._event.wait(timeout)


# ---------------------------------------------------------------------------
# Mailbox
# ---------------------------------------------------------------------------

class Mailbox:
    """Thread-safe FIFO of state mutations, drained by the owner thread."""

    def __init__(self) -> None:
        self._items: collections.deque = collections.deque()

    def post(self, token: CancelToken | None, label: str, fn: Callable[[], None]) -> None:
        self._items.append((token, label, fn))

    def drain(self) -> int:
        """Run every queued mutation.  Returns how many were applied."""
        applied = 0
        while True:
            try:
                token, label, fn = self._items.popleft()
            except IndexError:
                break
            if token is not None and token.cancelled:
                logger.debug("Discarding %s result after %s was cancelled", label, token.name)
                continue
            try:
                fn()
                applied += 1
            except Exception:
                logger.exception("Applying %s failed", label)
        return applied

    def __len__(self) -> int:
        return len(self._items)


# ---------------------------------------------------------------------------
# Periodic jobs
# ---------------------------------------------------------------------------

class PeriodicJob:
    """
    Background loop calling work(token) every interval_sec.

    An exception from work() is logged and the loop carries on at its next
    interval; the next successful cycle heals whatever the failed one missed.
    Cycles are serialised by a lock, so run_once() may be called from any
    thread without reordering this job's results.
    """

    def __init__(self, name: str, interval_sec: float, work: Callable[[CancelToken], None],
                 run_immediately: bool = True) -> None:
        self.name = name
        self.interval_sec = max(0.05, float(interval_sec))
        self._work = work
        self._run_immediately = run_immediately
        self.token = CancelToken(name)
        self._thread: threading.Thread | None = None
        self.runs = 0
        self._cycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self.token.cancelled

    def start(self) -> None:
        if self.running:
            return
        if self.token.cancelled:
            self.token = CancelToken(self.name)
        self._thread = threading.Thread(target=self._loop, daemon=True, name=f"poll-{self.name}")
        self._thread.start()
        logger.info("Job %s started (every %.1fs)", self.name, self.interval_sec)

    def stop(self, reason: str = "", join_timeout: float = 2.0) -> None:
        if self.token.cancelled:
            return
        self.token.cancel()
        logger.info("Job %s stopped%s", self.name, f" ({reason})" if reason else "")
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)

    def run_once(self) -> None:
        """One cycle on the calling thread.  Waits for any cycle in flight."""
        with self._cycle_lock:
            self.runs += 1
            try:
                self._work(self.token)
            except Exception as e:
                logger.warning("Job %s cycle failed: %s", self.name, e)

    def _loop(self) -> None:
        token = self.token
        if not self._run_immediately:
            token.wait(self.interval_sec)
        while not token.cancelled:
            self.run_once()
            # Sleep interruptibly: stop() wakes us immediately.
            token.wait(self.interval_sec)


# ---------------------------------------------------------------------------
# Write worker
# ---------------------------------------------------------------------------

class WriteWorker:
    """
    Runs store mutations one at a time, in submission order, off the owner
    thread.  Fire-and-forget: each task handles its own errors.  When the
    queue is full the oldest pending task is dropped.
    """

    def __init__(self, max_queue: int = 200) -> None:
        self._queue: collections.deque = collections.deque(maxlen=max(1, int(max_queue)))
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="store-writer")
        self._thread.start()
        logger.info("Store writer thread started")

    def submit(self, label: str, fn: Callable[[], None]) -> None:
        if len(self._queue) == self._queue.maxlen:
            logger.warning("Write queue full (%d); dropping oldest task", self._queue.maxlen)
        self._queue.append((label, fn))
        self._wake.set()

    def run_pending(self) -> int:
        """Run queued tasks on the calling thread.  Returns how many ran."""
        ran = 0
        while True:
            try:
                label, fn = self._queue.popleft()
            except IndexError:
                break
            try:
                fn()
            except Exception as e:
                logger.warning("Store write %s failed: %s", label, e)
            ran += 1
        return ran

    def stop(self, join_timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
        self._thread = None

    def __len__(self) -> int:
        return len(self._queue)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait()
            self._wake.clear()
            self.run_pending()
        # Final flush on shutdown
        self.run_pending()
        logger.info("Store writer thread stopped")


# ---------------------------------------------------------------------------
# Deferred calls
# ---------------------------------------------------------------------------

class DeferredCalls:
    """Owner-thread timers.  run_due() fires everything whose time has come."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list = []
        self._seq = itertools.count()

    def call_later(self, delay_sec: float, label: str, fn: Callable[[], None]) -> None:
        due = self._clock() + max(0.0, float(delay_sec))
        heapq.heappush(self._heap, (due, next(self._seq), label, fn))

    def run_due(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        fired = 0
        while self._heap and self._heap[0][0] <= now:
            _due, _seq, label, fn = heapq.heappop(self._heap)
            try:
                fn()
            except Exception:
                logger.exception("Deferred %s failed", label)
            fired += 1
        return fired

    def clear(self) -> None:
        self._heap.clear()

    def __len__(self) -> int:
        return len(self._heap)
