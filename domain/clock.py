"""Deterministic clock shared by everything that reads time during a frame."""

from __future__ import annotations

import json
import threading
from typing import Callable, Protocol

FrameCallback = Callable[[float], None]


def frame_time_ms(frame: int, fps: int) -> float:
    """Return the pinned wall-clock instant for a frame, in milliseconds."""
    return frame / fps * 1000


class Clock(Protocol):
    """Time source handed to content for one rendering session."""

    def now(self) -> float: ...

    def schedule_immediate(self, callback: FrameCallback) -> int: ...

    def cancel(self, handle: int) -> None: ...


class VirtualClock:
    """In-memory clock pinned to the frame being captured.

    Callbacks scheduled with schedule_immediate run on the next tick with the
    pinned time, so content-driven animation loops advance one step per frame.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._now_ms = 0.0
        self._next_handle = 1
        self._queue: dict[int, FrameCallback] = {}

    def set_frame(self, frame: int, fps: int) -> None:
        with self._lock:
            self._now_ms = frame_time_ms(frame, fps)

    def now(self) -> float:
        with self._lock:
            return self._now_ms

    def schedule_immediate(self, callback: FrameCallback) -> int:
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._queue[handle] = callback
            return handle

    def cancel(self, handle: int) -> None:
        with self._lock:
            self._queue.pop(handle, None)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def tick(self) -> int:
        """Run callbacks queued before this tick; return how many ran."""
        with self._lock:
            callbacks = list(self._queue.values())
            self._queue.clear()
            now_ms = self._now_ms
        for callback in callbacks:
            callback(now_ms)
        return len(callbacks)


CLOCK_BRIDGE_TEMPLATE = """
(function() {
  const timeMs = %(time_ms)s;
  const frame = %(frame)d;
  if (!window.__OPEN_MOTION_NATIVE_DATE__) {
    window.__OPEN_MOTION_NATIVE_DATE__ = window.Date;
  }
  const NativeDate = window.__OPEN_MOTION_NATIVE_DATE__;
  function PinnedDate(...args) {
    if (!(this instanceof PinnedDate)) {
      return new NativeDate(timeMs).toString();
    }
    if (args.length === 0) {
      return new NativeDate(timeMs);
    }
    return new NativeDate(...args);
  }
  PinnedDate.now = () => timeMs;
  PinnedDate.parse = NativeDate.parse;
  PinnedDate.UTC = NativeDate.UTC;
  PinnedDate.prototype = NativeDate.prototype;
  window.Date = PinnedDate;

  if (window.performance) {
    window.performance.now = () => timeMs;
  }

  window.requestAnimationFrame = (callback) => {
    return setTimeout(() => callback(timeMs), 0);
  };
  window.cancelAnimationFrame = (id) => clearTimeout(id);
  window.__OPEN_MOTION_CLOCK_FRAME__ = frame;
})();
"""


def build_clock_bridge_script(frame: int, fps: int) -> str:
    """Build the page script that pins Date, performance and rAF to a frame."""
    return CLOCK_BRIDGE_TEMPLATE % {
        "time_ms": json.dumps(frame_time_ms(frame, fps)),
        "frame": frame,
    }
