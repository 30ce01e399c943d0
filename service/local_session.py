"""In-process rendering surface that draws Python compositions with Pillow."""

from __future__ import annotations

import io
import logging
from typing import Any, Mapping, Sequence, Tuple

from PIL import Image

from domain.clock import VirtualClock
from domain.composition import (
    INVALID_COMPOSITION_CODE,
    AudioAsset,
    Composition,
    RenderValidationError,
    VideoFrameAsset,
)
from domain.frame_context import FrameScope, FrameState, HarvestBuffer
from domain.readiness import ReadinessGate
from service.video_frames import decode_png_data_uri

LOGGER = logging.getLogger("render_composition.local_session")

DEFAULT_BACKGROUND_RGBA = (0, 0, 0, 255)


class LocalSession:
    """Evaluates a composition callable once per frame onto a fresh canvas."""

    def __init__(
        self,
        composition: Composition,
        input_props: Mapping[str, Any] | None = None,
        background_rgba: Tuple[int, int, int, int] = DEFAULT_BACKGROUND_RGBA,
    ) -> None:
        if composition.component is None:
            raise RenderValidationError(
                INVALID_COMPOSITION_CODE,
                f"composition {composition.id!r} has no local component",
            )
        self.composition = composition
        self.input_props = dict(input_props or {})
        self.background_rgba = background_rgba
        self.gate = ReadinessGate()
        self.clock = VirtualClock()
        self.harvest = HarvestBuffer()
        self.canvas: Image.Image | None = None
        self.frame: int | None = None

    def _evaluate(self, frame: int) -> None:
        config = self.composition.config
        self.gate.reset()
        self.harvest.clear()
        self.clock.set_frame(frame, config.fps)
        self.clock.tick()
        self.canvas = Image.new("RGBA", (config.width, config.height), self.background_rgba)
        self.frame = frame
        scope = FrameScope(
            FrameState(current_frame=frame, absolute_frame=frame, input_props=self.input_props),
            config,
            self.clock,
            self.gate,
            self.harvest,
            self.canvas,
        )
        self.composition.component(scope)
        self.gate.mark_mounted()

    def navigate(self, frame: int) -> None:
        self._evaluate(frame)

    def advance(self, frame: int) -> None:
        self._evaluate(frame)

    def wait_until_ready(self, timeout_seconds: float) -> bool:
        return self.gate.wait_until_ready(timeout_seconds)

    def wait_for_network_idle(self, timeout_seconds: float) -> None:
        return None

    def collect_video_frames(self) -> Tuple[VideoFrameAsset, ...]:
        return self.harvest.snapshot_video()

    def inject_video_frames(
        self, frames: Mapping[str, str], assets: Sequence[VideoFrameAsset]
    ) -> None:
        """Paste extracted stills into the boxes their videos declared."""
        if self.canvas is None:
            return
        for asset in assets:
            data_uri = frames.get(asset.id)
            if data_uri is None or asset.box is None:
                continue
            x, y, width, height = asset.box
            with Image.open(io.BytesIO(decode_png_data_uri(data_uri))) as still:
                inlay = still.convert("RGBA").resize((width, height))
            self.canvas.paste(inlay, (x, y), inlay)

    def capture(self, path: str) -> None:
        if self.canvas is None:
            raise RuntimeError("capture called before any frame was evaluated")
        self.canvas.convert("RGB").save(path, format="PNG")

    def collect_audio_assets(self) -> Tuple[AudioAsset, ...]:
        return self.harvest.drain_audio()

    def close(self) -> None:
        if self.gate.pending:
            LOGGER.debug(
                "render_composition.local_session.unreleased: %s",
                ", ".join(self.gate.pending_labels()),
            )
        self.canvas = None
