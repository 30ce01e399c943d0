"""Domain types and validation for render_composition."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import threading
from typing import Any, Callable, Iterable, Mapping, Tuple

INVALID_CONFIG_CODE = "render_composition.input.invalid_config"
INVALID_COMPOSITION_CODE = "render_composition.input.invalid_composition"
UNKNOWN_COMPOSITION_CODE = "render_composition.input.unknown_composition"
INVALID_ASSET_CODE = "render_composition.input.invalid_asset"
INVALID_WINDOW_CODE = "render_composition.input.invalid_window"
INVALID_PROPS_CODE = "render_composition.input.invalid_props"
INVALID_CONCURRENCY_CODE = "render_composition.input.invalid_concurrency"

FRAME_FILE_PREFIX = "frame-"
FRAME_FILE_SUFFIX = ".png"
FRAME_FILE_PATTERN = "frame-%05d.png"


class RenderValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def _require_positive_int(value: object, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"{label} must be a positive integer: {value!r}"
        )


@dataclass(frozen=True)
class VideoConfig:
    """Frame geometry, rate and length of one render."""

    width: int
    height: int
    fps: int
    duration_in_frames: int

    def __post_init__(self) -> None:
        _require_positive_int(self.width, "width")
        _require_positive_int(self.height, "height")
        _require_positive_int(self.fps, "fps")
        _require_positive_int(self.duration_in_frames, "duration_in_frames")

    @property
    def duration_seconds(self) -> float:
        return self.duration_in_frames / float(self.fps)

    def with_overrides(
        self,
        width: int | None = None,
        height: int | None = None,
        fps: int | None = None,
        duration_in_frames: int | None = None,
    ) -> "VideoConfig":
        """Return a copy with any provided values replaced."""
        return VideoConfig(
            width=self.width if width is None else width,
            height=self.height if height is None else height,
            fps=self.fps if fps is None else fps,
            duration_in_frames=(
                self.duration_in_frames
                if duration_in_frames is None
                else duration_in_frames
            ),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "VideoConfig":
        """Build a config from a camelCase or snake_case mapping."""
        duration = payload.get("durationInFrames", payload.get("duration_in_frames"))
        try:
            return cls(
                width=int(payload["width"]),
                height=int(payload["height"]),
                fps=int(payload["fps"]),
                duration_in_frames=int(duration) if duration is not None else 0,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, f"invalid video config: {dict(payload)!r}"
            ) from exc


@dataclass(frozen=True)
class Composition:
    """A named, sized, timed unit of renderable content."""

    id: str
    config: VideoConfig
    component: Callable[..., None] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise RenderValidationError(
                INVALID_COMPOSITION_CODE, "composition id must be non-empty"
            )
        if not isinstance(self.config, VideoConfig):
            raise RenderValidationError(
                INVALID_COMPOSITION_CODE, "composition config is invalid"
            )


@dataclass
class CompositionRegistry:
    """Compositions keyed by id; registering an existing id overwrites it."""

    compositions: dict[str, Composition] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, composition: Composition) -> Composition:
        """Register a composition, replacing any previous one with the same id."""
        with self.lock:
            self.compositions[composition.id] = composition
        return composition

    def get(self, composition_id: str) -> Composition | None:
        """Fetch a composition by id."""
        with self.lock:
            return self.compositions.get(composition_id)

    def require(self, composition_id: str) -> Composition:
        """Fetch a composition by id or raise a validation error."""
        composition = self.get(composition_id)
        if composition is None:
            raise RenderValidationError(
                UNKNOWN_COMPOSITION_CODE, f"composition not found: {composition_id!r}"
            )
        return composition

    def list_compositions(self) -> list[Composition]:
        """Return all compositions in registration order."""
        with self.lock:
            return list(self.compositions.values())

    def __len__(self) -> int:
        with self.lock:
            return len(self.compositions)

    def __contains__(self, composition_id: object) -> bool:
        with self.lock:
            return composition_id in self.compositions


@dataclass(frozen=True)
class AudioAsset:
    """Audio declared by content, positioned on the absolute timeline."""

    src: str
    start_frame: int = 0
    start_from: int = 0
    volume: float = 1.0

    def __post_init__(self) -> None:
        if not isinstance(self.src, str) or not self.src.strip():
            raise RenderValidationError(INVALID_ASSET_CODE, "audio src must be non-empty")
        if self.start_frame < 0:
            raise RenderValidationError(
                INVALID_ASSET_CODE, "audio start_frame must be non-negative"
            )
        if self.start_from < 0:
            raise RenderValidationError(
                INVALID_ASSET_CODE, "audio start_from must be non-negative"
            )
        if not 0.0 <= float(self.volume) <= 1.0:
            raise RenderValidationError(
                INVALID_ASSET_CODE, f"audio volume must be within 0..1: {self.volume}"
            )

    def dedupe_key(self) -> Tuple[str, int, int, float]:
        return (self.src, self.start_from, self.start_frame, float(self.volume))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "AudioAsset":
        """Build an asset from a harvested page declaration."""
        volume = payload.get("volume")
        return cls(
            src=str(payload.get("src") or ""),
            start_frame=int(payload.get("startFrame") or 0),
            start_from=int(payload.get("startFrom") or 0),
            volume=1.0 if volume is None else float(volume),
        )

    def with_src(self, src: str) -> "AudioAsset":
        return AudioAsset(
            src=src,
            start_frame=self.start_frame,
            start_from=self.start_from,
            volume=self.volume,
        )


@dataclass(frozen=True)
class VideoFrameAsset:
    """A still frame requested from an embedded video for one captured frame."""

    id: str
    src: str
    time: float
    box: Tuple[int, int, int, int] | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise RenderValidationError(INVALID_ASSET_CODE, "video id must be non-empty")
        if not self.src:
            raise RenderValidationError(INVALID_ASSET_CODE, "video src must be non-empty")
        if self.time < 0 or math.isnan(self.time):
            raise RenderValidationError(
                INVALID_ASSET_CODE, f"video time must be non-negative: {self.time}"
            )
        if self.box is not None and (self.box[2] <= 0 or self.box[3] <= 0):
            raise RenderValidationError(
                INVALID_ASSET_CODE, "video box width and height must be positive"
            )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "VideoFrameAsset":
        return cls(
            id=str(payload.get("id") or ""),
            src=str(payload.get("src") or ""),
            time=float(payload.get("time") or 0.0),
        )


@dataclass(frozen=True)
class WorkerRange:
    """Inclusive frame range owned by one worker."""

    worker_id: int
    start_frame: int
    end_frame: int

    def __post_init__(self) -> None:
        if self.start_frame < 0 or self.end_frame < self.start_frame:
            raise RenderValidationError(
                INVALID_WINDOW_CODE,
                f"invalid worker range: {self.start_frame}..{self.end_frame}",
            )

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame + 1

    def frames(self) -> range:
        return range(self.start_frame, self.end_frame + 1)


def partition_frames(duration_in_frames: int, concurrency: int) -> Tuple[WorkerRange, ...]:
    """Split [0, duration) into contiguous ranges of ceil(duration/concurrency)."""
    _require_positive_int(duration_in_frames, "duration_in_frames")
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        raise RenderValidationError(
            INVALID_CONCURRENCY_CODE, f"concurrency must be >= 1: {concurrency!r}"
        )
    frames_per_worker = int(math.ceil(duration_in_frames / concurrency))
    ranges: list[WorkerRange] = []
    for worker_id in range(concurrency):
        start_frame = worker_id * frames_per_worker
        if start_frame >= duration_in_frames:
            break
        end_frame = min(start_frame + frames_per_worker, duration_in_frames) - 1
        ranges.append(WorkerRange(worker_id, start_frame, end_frame))
    return tuple(ranges)


def dedupe_audio_assets(assets: Iterable[AudioAsset]) -> Tuple[AudioAsset, ...]:
    """Drop repeated declarations; the first-seen instance wins."""
    unique: dict[Tuple[str, int, int, float], AudioAsset] = {}
    for asset in assets:
        unique.setdefault(asset.dedupe_key(), asset)
    return tuple(unique.values())


def frame_file_name(frame_index: int) -> str:
    """Return the zero-padded PNG name for a frame index."""
    return FRAME_FILE_PATTERN % frame_index


def normalize_input_props(raw_props: object) -> dict[str, Any]:
    """Validate the schema-less props bag passed to content."""
    if raw_props is None:
        return {}
    if not isinstance(raw_props, Mapping):
        raise RenderValidationError(
            INVALID_PROPS_CODE, "input props must be a JSON object"
        )
    return {str(key): value for key, value in raw_props.items()}
