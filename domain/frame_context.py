"""Frame state broadcast to content, with nested time windows."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
from types import MappingProxyType
from typing import Any, Callable, Mapping, Tuple

from PIL import Image, ImageDraw

from domain.clock import Clock
from domain.composition import (
    INVALID_WINDOW_CODE,
    AudioAsset,
    RenderValidationError,
    VideoConfig,
    VideoFrameAsset,
)
from domain.readiness import ReadinessGate


@dataclass(frozen=True)
class FrameState:
    """Frame numbers visible to content while one frame is evaluated."""

    current_frame: int
    absolute_frame: int
    input_props: Mapping[str, Any] = field(default_factory=dict)

    def rebind(self, current_frame: int) -> "FrameState":
        return FrameState(
            current_frame=current_frame,
            absolute_frame=self.absolute_frame,
            input_props=self.input_props,
        )


@dataclass(frozen=True)
class TimeWindow:
    """Sub-range of the timeline that renumbers frames for nested content."""

    start: int
    duration_in_frames: int | None = None

    def __post_init__(self) -> None:
        if self.start < 0:
            raise RenderValidationError(
                INVALID_WINDOW_CODE, f"window start must be non-negative: {self.start}"
            )
        if self.duration_in_frames is not None and self.duration_in_frames <= 0:
            raise RenderValidationError(
                INVALID_WINDOW_CODE,
                f"window duration must be positive: {self.duration_in_frames}",
            )

    def relative_frame(self, frame: int) -> int:
        return frame - self.start

    def is_visible(self, frame: int) -> bool:
        relative = self.relative_frame(frame)
        if relative < 0:
            return False
        return self.duration_in_frames is None or relative < self.duration_in_frames


@dataclass
class HarvestBuffer:
    """Audio and video declarations collected while evaluating one frame."""

    audio_assets: list[AudioAsset] = field(default_factory=list)
    video_assets: list[VideoFrameAsset] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def add_audio(self, asset: AudioAsset) -> None:
        with self.lock:
            self.audio_assets.append(asset)

    def add_video(self, asset: VideoFrameAsset) -> None:
        with self.lock:
            self.video_assets.append(asset)

    def drain_audio(self) -> Tuple[AudioAsset, ...]:
        with self.lock:
            assets = tuple(self.audio_assets)
            self.audio_assets.clear()
        return assets

    def snapshot_video(self) -> Tuple[VideoFrameAsset, ...]:
        with self.lock:
            return tuple(self.video_assets)

    def clear(self) -> None:
        with self.lock:
            self.audio_assets.clear()
            self.video_assets.clear()


Content = Callable[["FrameScope"], None]


class FrameScope:
    """Read-only view of the current frame handed to composition content."""

    def __init__(
        self,
        state: FrameState,
        video_config: VideoConfig,
        clock: Clock,
        gate: ReadinessGate,
        harvest: HarvestBuffer,
        canvas: Image.Image,
    ) -> None:
        self._state = state
        self._video_config = video_config
        self._clock = clock
        self._gate = gate
        self._harvest = harvest
        self._canvas = canvas
        self._draw: ImageDraw.ImageDraw | None = None

    @property
    def current_frame(self) -> int:
        return self._state.current_frame

    @property
    def absolute_frame(self) -> int:
        return self._state.absolute_frame

    @property
    def video_config(self) -> VideoConfig:
        return self._video_config

    @property
    def input_props(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._state.input_props))

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def canvas(self) -> Image.Image:
        return self._canvas

    @property
    def draw(self) -> ImageDraw.ImageDraw:
        if self._draw is None:
            self._draw = ImageDraw.Draw(self._canvas)
        return self._draw

    @property
    def window_origin(self) -> int:
        """Absolute frame where the innermost enclosing window starts."""
        return self._state.absolute_frame - self._state.current_frame

    def _child(self, current_frame: int) -> "FrameScope":
        return FrameScope(
            self._state.rebind(current_frame),
            self._video_config,
            self._clock,
            self._gate,
            self._harvest,
            self._canvas,
        )

    def sequence(
        self,
        start: int,
        duration_in_frames: int | None,
        content: Content,
    ) -> bool:
        """Evaluate content inside a time window; return whether it was visible."""
        window = TimeWindow(start=start, duration_in_frames=duration_in_frames)
        if not window.is_visible(self.current_frame):
            return False
        content(self._child(window.relative_frame(self.current_frame)))
        return True

    def audio(self, src: str, start_from: int = 0, volume: float = 1.0) -> AudioAsset:
        """Declare an audio track starting at the enclosing window origin."""
        asset = AudioAsset(
            src=src,
            start_frame=self.window_origin,
            start_from=start_from,
            volume=volume,
        )
        self._harvest.add_audio(asset)
        return asset

    def video(
        self,
        video_id: str,
        src: str,
        box: Tuple[int, int, int, int],
        start_from: int = 0,
        playback_rate: float = 1.0,
        end_at: int | None = None,
    ) -> VideoFrameAsset | None:
        """Declare an embedded video whose still frame is composited into box."""
        if end_at is not None and self.current_frame >= end_at:
            return None
        time_seconds = (
            start_from + max(0, self.current_frame) * playback_rate
        ) / self._video_config.fps
        asset = VideoFrameAsset(id=video_id, src=src, time=time_seconds, box=box)
        self._harvest.add_video(asset)
        return asset

    def delay_render(self, label: str | None = None) -> int:
        return self._gate.acquire(label)

    def continue_render(self, handle: int) -> None:
        self._gate.release(handle)
