"""Headless Chromium rendering surface driven through Playwright."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Mapping, Sequence, Tuple

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from domain.clock import build_clock_bridge_script
from domain.composition import (
    AudioAsset,
    Composition,
    RenderValidationError,
    VideoConfig,
    VideoFrameAsset,
)
from service.render_session import BROWSER_CODE, DISCOVERY_CODE, RenderPipelineError

LOGGER = logging.getLogger("render_composition.browser_session")

CHROMIUM_EXECUTABLE_ENV = "PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH"
CHROMIUM_ARGS = ("--disable-dev-shm-usage", "--disable-setuid-sandbox", "--no-sandbox")
DISCOVERY_SETTLE_MS = 500
DISCOVERY_FPS = 30

BOOTSTRAP_TEMPLATE = """
(function() {
  window.__OPEN_MOTION_FRAME__ = %(frame)d;
  window.__OPEN_MOTION_COMPOSITION_ID__ = %(composition_id)s;
  window.__OPEN_MOTION_INPUT_PROPS__ = %(input_props)s;
  window.__OPEN_MOTION_READY__ = false;
  window.__OPEN_MOTION_DELAY_RENDER_COUNT__ = 0;
  window.__OPEN_MOTION_AUDIO_ASSETS__ = [];
  window.__OPEN_MOTION_VIDEO_ASSETS__ = [];
  window.__OPEN_MOTION_VIDEO_FRAMES__ = {};
  const pending = new Map();
  let nextHandle = 0;
  window.__OPEN_MOTION_DELAY_RENDER__ = function(label) {
    const handle = nextHandle++;
    pending.set(handle, label || String(handle));
    window.__OPEN_MOTION_DELAY_RENDER_COUNT__ = pending.size;
    return handle;
  };
  window.__OPEN_MOTION_CONTINUE_RENDER__ = function(handle) {
    if (pending.delete(handle)) {
      window.__OPEN_MOTION_DELAY_RENDER_COUNT__ = pending.size;
    }
  };
})();
"""

ADVANCE_SCRIPT = """
({ frame, clockScript }) => {
  window.__OPEN_MOTION_READY__ = false;
  window.__OPEN_MOTION_FRAME__ = frame;
  window.__OPEN_MOTION_AUDIO_ASSETS__ = [];
  window.__OPEN_MOTION_VIDEO_ASSETS__ = [];
  (0, eval)(clockScript);
  if (typeof window.__OPEN_MOTION_SET_FRAME__ === 'function') {
    window.__OPEN_MOTION_SET_FRAME__(frame);
  } else {
    window.dispatchEvent(new CustomEvent('open-motion-frame-update', { detail: { frame } }));
  }
}
"""

INJECT_VIDEO_FRAMES_SCRIPT = """
(frames) => {
  window.__OPEN_MOTION_VIDEO_FRAMES__ = frames;
  if (typeof window.__OPEN_MOTION_SET_VIDEO_FRAMES__ === 'function') {
    window.__OPEN_MOTION_READY__ = false;
    window.__OPEN_MOTION_SET_VIDEO_FRAMES__(frames);
  }
}
"""

READY_PREDICATE = """
() => window.__OPEN_MOTION_READY__ === true
  && (window.__OPEN_MOTION_DELAY_RENDER_COUNT__ || 0) === 0
"""


def build_bootstrap_script(
    frame: int,
    fps: int,
    composition_id: str | None,
    input_props: Mapping[str, Any],
) -> str:
    """Build the init script installed before the page's own scripts run."""
    bootstrap = BOOTSTRAP_TEMPLATE % {
        "frame": frame,
        "composition_id": json.dumps(composition_id),
        "input_props": json.dumps(dict(input_props), sort_keys=True),
    }
    return bootstrap + build_clock_bridge_script(frame, fps)


def resolve_chromium_executable(executable_path: str | None = None) -> str | None:
    return executable_path or os.environ.get(CHROMIUM_EXECUTABLE_ENV) or None


def compositions_from_payload(payload: Sequence[Mapping[str, Any]]) -> Tuple[Composition, ...]:
    """Convert page-registered composition records, skipping invalid ones."""
    compositions = []
    for entry in payload or ():
        try:
            compositions.append(
                Composition(id=str(entry.get("id") or ""), config=VideoConfig.from_mapping(entry))
            )
        except RenderValidationError as exc:
            LOGGER.warning("%s: skipping composition %r", exc.code, entry.get("id"))
    return tuple(compositions)


class BrowserSession:
    """One Chromium process and page owned by a single worker thread."""

    def __init__(
        self,
        url: str,
        config: VideoConfig,
        composition_id: str | None = None,
        input_props: Mapping[str, Any] | None = None,
        executable_path: str | None = None,
    ) -> None:
        self.url = url
        self.config = config
        self.composition_id = composition_id
        self.input_props = dict(input_props or {})
        self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.launch(
                args=list(CHROMIUM_ARGS),
                executable_path=resolve_chromium_executable(executable_path),
            )
            self._page = self._browser.new_page(
                viewport={"width": config.width, "height": config.height}
            )
        except PlaywrightError as exc:
            self._playwright.stop()
            raise RenderPipelineError(
                BROWSER_CODE, f"could not launch chromium: {str(exc).strip()}"
            ) from exc

    def navigate(self, frame: int) -> None:
        self._page.add_init_script(
            script=build_bootstrap_script(
                frame, self.config.fps, self.composition_id, self.input_props
            )
        )
        self._page.goto(self.url)

    def advance(self, frame: int) -> None:
        self._page.evaluate(
            ADVANCE_SCRIPT,
            {"frame": frame, "clockScript": build_clock_bridge_script(frame, self.config.fps)},
        )

    def wait_until_ready(self, timeout_seconds: float) -> bool:
        try:
            self._page.wait_for_function(READY_PREDICATE, timeout=timeout_seconds * 1000)
        except PlaywrightTimeoutError:
            return False
        return True

    def wait_for_network_idle(self, timeout_seconds: float) -> None:
        try:
            self._page.wait_for_load_state("networkidle", timeout=timeout_seconds * 1000)
        except PlaywrightTimeoutError:
            LOGGER.warning(
                "render_composition.render.network_busy: network not idle after %.1fs",
                timeout_seconds,
            )

    def collect_video_frames(self) -> Tuple[VideoFrameAsset, ...]:
        payload = self._page.evaluate("() => window.__OPEN_MOTION_VIDEO_ASSETS__ || []")
        assets = []
        for entry in payload:
            try:
                assets.append(VideoFrameAsset.from_mapping(entry))
            except RenderValidationError as exc:
                LOGGER.warning("%s: ignoring video declaration %r", exc.code, entry)
        return tuple(assets)

    def inject_video_frames(
        self, frames: Mapping[str, str], assets: Sequence[VideoFrameAsset]
    ) -> None:
        self._page.evaluate(INJECT_VIDEO_FRAMES_SCRIPT, dict(frames))

    def capture(self, path: str) -> None:
        self._page.screenshot(path=path, type="png")

    def collect_audio_assets(self) -> Tuple[AudioAsset, ...]:
        payload = self._page.evaluate("() => window.__OPEN_MOTION_AUDIO_ASSETS__ || []")
        assets = []
        for entry in payload:
            try:
                assets.append(AudioAsset.from_mapping(entry))
            except RenderValidationError as exc:
                LOGGER.warning("%s: ignoring audio declaration %r", exc.code, entry)
        return tuple(assets)

    def close(self) -> None:
        try:
            self._browser.close()
        finally:
            self._playwright.stop()


def get_compositions(
    url: str,
    input_props: Mapping[str, Any] | None = None,
    timeout_seconds: float = 10.0,
    executable_path: str | None = None,
) -> Tuple[Composition, ...]:
    """Load the page once and read the compositions it registers."""
    with sync_playwright() as playwright:
        try:
            browser = playwright.chromium.launch(
                args=list(CHROMIUM_ARGS),
                executable_path=resolve_chromium_executable(executable_path),
            )
        except PlaywrightError as exc:
            raise RenderPipelineError(
                BROWSER_CODE, f"could not launch chromium: {str(exc).strip()}"
            ) from exc
        try:
            page = browser.new_page()
            page.add_init_script(
                script=build_bootstrap_script(0, DISCOVERY_FPS, None, input_props or {})
            )
            page.goto(url)
            page.wait_for_load_state("networkidle", timeout=timeout_seconds * 1000)
            try:
                page.wait_for_function(
                    "() => window.__OPEN_MOTION_COMPOSITIONS__ !== undefined",
                    timeout=timeout_seconds * 1000,
                )
            except PlaywrightTimeoutError:
                LOGGER.warning(
                    "render_composition.discovery.timeout: no compositions registered at %s",
                    url,
                )
            page.wait_for_timeout(DISCOVERY_SETTLE_MS)
            payload = page.evaluate("() => window.__OPEN_MOTION_COMPOSITIONS__ || []")
        except PlaywrightError as exc:
            raise RenderPipelineError(
                DISCOVERY_CODE, f"composition discovery failed: {str(exc).strip()}"
            ) from exc
        finally:
            browser.close()
    return compositions_from_payload(payload)
