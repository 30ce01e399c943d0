"""Counting gate that holds frame capture while content loads resources."""

from __future__ import annotations

import logging
import threading
import time

LOGGER = logging.getLogger("render_composition.readiness")


class ReadinessGate:
    """Counts outstanding async resources for one rendering session.

    Capture may proceed only when no handle is outstanding and content has
    reported itself mounted for the current frame.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._next_handle = 0
        self._pending: dict[int, str] = {}
        self._mounted = False

    @property
    def pending(self) -> int:
        with self._condition:
            return len(self._pending)

    @property
    def mounted(self) -> bool:
        with self._condition:
            return self._mounted

    def pending_labels(self) -> list[str]:
        """Return labels of handles that have not been released."""
        with self._condition:
            return list(self._pending.values())

    def acquire(self, label: str | None = None) -> int:
        """Register an outstanding resource and return its handle."""
        with self._condition:
            handle = self._next_handle
            self._next_handle += 1
            self._pending[handle] = label or str(handle)
            count = len(self._pending)
        LOGGER.debug(
            "render_composition.readiness.acquire: %s (pending=%d)",
            label or handle,
            count,
        )
        return handle

    def release(self, handle: int) -> None:
        """Release a handle; unknown or already released handles are ignored."""
        with self._condition:
            label = self._pending.pop(handle, None)
            count = len(self._pending)
            if label is not None:
                self._condition.notify_all()
        if label is not None:
            LOGGER.debug(
                "render_composition.readiness.release: %s (pending=%d)", label, count
            )

    def mark_mounted(self) -> None:
        with self._condition:
            self._mounted = True
            self._condition.notify_all()

    def reset(self) -> None:
        """Clear the mounted flag before a new frame is evaluated."""
        with self._condition:
            self._mounted = False

    def is_ready(self) -> bool:
        with self._condition:
            return self._mounted and not self._pending

    def wait_until_ready(self, timeout_seconds: float) -> bool:
        """Block until ready or until the timeout elapses; return readiness."""
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        with self._condition:
            while not (self._mounted and not self._pending):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True
