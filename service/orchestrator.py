"""Multi-worker frame capture with readiness gating and asset harvesting."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
import os
import threading
import time
from typing import Any, Callable, Mapping, NoReturn, Tuple

from domain.composition import (
    INVALID_CONFIG_CODE,
    UNKNOWN_COMPOSITION_CODE,
    AudioAsset,
    Composition,
    CompositionRegistry,
    RenderValidationError,
    VideoConfig,
    WorkerRange,
    dedupe_audio_assets,
    frame_file_name,
    normalize_input_props,
    partition_frames,
)
from service.browser_session import BrowserSession, get_compositions
from service.local_session import LocalSession
from service.render_session import (
    ADVANCE_CODE,
    CANCELLED_CODE,
    CAPTURE_CODE,
    HARVEST_CODE,
    MISSING_FRAMES_CODE,
    NAVIGATE_CODE,
    READY_FAILED_CODE,
    READY_TIMEOUT_CODE,
    RenderPipelineError,
    RenderSession,
)
from service.video_frames import VideoFrameExtractor

LOGGER = logging.getLogger("render_composition.orchestrator")

INVALID_REQUEST_CODE = "render_composition.input.invalid_request"

DEFAULT_READY_TIMEOUT_SECONDS = 60.0
DEFAULT_NETWORK_IDLE_TIMEOUT_SECONDS = 30.0
DEFAULT_STABILIZATION_DELAY_SECONDS = 0.1
READY_POLL_SECONDS = 0.25

SessionFactory = Callable[[WorkerRange], RenderSession]
FrameProgressCallback = Callable[[int], None]

__all__ = [
    "RenderFramesRequest",
    "RenderResult",
    "get_compositions",
    "load_registry",
    "render_frames",
    "select_composition",
]


@dataclass(frozen=True)
class RenderFramesRequest:
    """Everything a render needs, validated before any worker starts."""

    config: VideoConfig
    output_dir: str
    url: str | None = None
    composition_id: str | None = None
    input_props: Mapping[str, Any] = field(default_factory=dict)
    concurrency: int = 1
    public_dir: str | None = None
    timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS
    network_idle_timeout_seconds: float = DEFAULT_NETWORK_IDLE_TIMEOUT_SECONDS
    stabilization_delay_seconds: float = DEFAULT_STABILIZATION_DELAY_SECONDS
    strict_video_frames: bool = False
    ffmpeg_path: str = "ffmpeg"
    chromium_path: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.config, VideoConfig):
            raise RenderValidationError(INVALID_CONFIG_CODE, "video config is required")
        if not self.output_dir:
            raise RenderValidationError(INVALID_REQUEST_CODE, "output dir is required")
        if self.timeout_seconds <= 0:
            raise RenderValidationError(
                INVALID_REQUEST_CODE, "ready timeout must be positive"
            )
        if self.network_idle_timeout_seconds <= 0:
            raise RenderValidationError(
                INVALID_REQUEST_CODE, "network idle timeout must be positive"
            )
        if self.stabilization_delay_seconds < 0:
            raise RenderValidationError(
                INVALID_REQUEST_CODE, "stabilization delay must be non-negative"
            )
        partition_frames(self.config.duration_in_frames, self.concurrency)
        object.__setattr__(self, "input_props", normalize_input_props(self.input_props))

    def frame_path(self, frame: int) -> str:
        return os.path.join(self.output_dir, frame_file_name(frame))


@dataclass(frozen=True)
class RenderResult:
    """Deduplicated audio timeline and frame files of a finished render."""

    audio_assets: Tuple[AudioAsset, ...]
    frame_count: int
    frame_paths: Tuple[str, ...]
    elapsed_seconds: float


class _FrameCounter:
    """Thread-safe captured-frame total reported to the progress callback."""

    def __init__(self, callback: FrameProgressCallback | None) -> None:
        self._lock = threading.Lock()
        self._total = 0
        self._callback = callback

    def increment(self) -> None:
        with self._lock:
            self._total += 1
            if self._callback is not None:
                self._callback(self._total)


def select_composition(
    registry: CompositionRegistry, composition_id: str | None = None
) -> Composition:
    """Pick a composition by id, or the first registered one."""
    if composition_id:
        return registry.require(composition_id)
    compositions = registry.list_compositions()
    if not compositions:
        raise RenderValidationError(UNKNOWN_COMPOSITION_CODE, "no compositions registered")
    return compositions[0]


def load_registry(
    url: str,
    input_props: Mapping[str, Any] | None = None,
    timeout_seconds: float = 10.0,
    executable_path: str | None = None,
) -> CompositionRegistry:
    """Build a registry from the compositions a page registers."""
    registry = CompositionRegistry()
    for composition in get_compositions(url, input_props, timeout_seconds, executable_path):
        registry.register(composition)
    return registry


def _default_session_factory(
    request: RenderFramesRequest, registry: CompositionRegistry | None
) -> SessionFactory:
    if registry is not None:
        selected = select_composition(registry, request.composition_id)
        composition = Composition(
            id=selected.id, config=request.config, component=selected.component
        )

        def local_factory(worker_range: WorkerRange) -> RenderSession:
            return LocalSession(composition, request.input_props)

        return local_factory

    if not request.url:
        raise RenderValidationError(
            INVALID_REQUEST_CODE, "a url is required when no registry is supplied"
        )

    def browser_factory(worker_range: WorkerRange) -> RenderSession:
        return BrowserSession(
            request.url,
            request.config,
            composition_id=request.composition_id,
            input_props=request.input_props,
            executable_path=request.chromium_path,
        )

    return browser_factory


def _raise_with_context(
    exc: Exception, code: str, frame: int | None, worker_id: int, started_at: float
) -> NoReturn:
    """Re-raise exc as a pipeline error that names the worker and frame."""
    if isinstance(exc, RenderPipelineError):
        if exc.frame is not None or exc.worker_id is not None:
            raise exc
        code = exc.code
    message = str(exc).strip() or exc.__class__.__name__
    raise RenderPipelineError(
        code,
        message,
        frame=frame,
        worker_id=worker_id,
        elapsed_seconds=time.monotonic() - started_at,
    ) from exc


def _raise_if_cancelled(
    cancel_event: threading.Event, frame: int, worker_id: int, started_at: float
) -> None:
    if cancel_event.is_set():
        raise RenderPipelineError(
            CANCELLED_CODE,
            "render cancelled after a sibling worker failed",
            frame=frame,
            worker_id=worker_id,
            elapsed_seconds=time.monotonic() - started_at,
        )


def _require_ready(
    session: RenderSession,
    request: RenderFramesRequest,
    frame: int,
    worker_id: int,
    cancel_event: threading.Event,
    started_at: float,
) -> None:
    """Wait for readiness in short slices so a failed sibling stops the wait."""
    deadline = time.monotonic() + request.timeout_seconds
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RenderPipelineError(
                READY_TIMEOUT_CODE,
                f"content not ready after {request.timeout_seconds:.1f}s",
                frame=frame,
                worker_id=worker_id,
                elapsed_seconds=time.monotonic() - started_at,
            )
        try:
            ready = session.wait_until_ready(min(READY_POLL_SECONDS, remaining))
        except Exception as exc:
            _raise_with_context(exc, READY_FAILED_CODE, frame, worker_id, started_at)
        if ready:
            return
        _raise_if_cancelled(cancel_event, frame, worker_id, started_at)


def _render_worker(
    worker_range: WorkerRange,
    request: RenderFramesRequest,
    session_factory: SessionFactory,
    extractor: VideoFrameExtractor,
    cancel_event: threading.Event,
    counter: _FrameCounter,
    started_at: float,
) -> Tuple[AudioAsset, ...]:
    """Capture every frame of one range on one isolated session."""
    worker_id = worker_range.worker_id
    try:
        session = session_factory(worker_range)
    except Exception as exc:
        _raise_with_context(exc, NAVIGATE_CODE, None, worker_id, started_at)

    LOGGER.info(
        "render_composition.render.worker_started: worker %d frames %d-%d",
        worker_id,
        worker_range.start_frame,
        worker_range.end_frame,
    )
    audio_assets: list[AudioAsset] = []
    try:
        for frame in worker_range.frames():
            _raise_if_cancelled(cancel_event, frame, worker_id, started_at)
            is_first = frame == worker_range.start_frame
            try:
                if is_first:
                    session.navigate(frame)
                else:
                    session.advance(frame)
            except Exception as exc:
                code = NAVIGATE_CODE if is_first else ADVANCE_CODE
                _raise_with_context(exc, code, frame, worker_id, started_at)

            _require_ready(session, request, frame, worker_id, cancel_event, started_at)
            if is_first:
                try:
                    session.wait_for_network_idle(request.network_idle_timeout_seconds)
                except Exception as exc:
                    _raise_with_context(exc, READY_FAILED_CODE, frame, worker_id, started_at)

            try:
                video_assets = session.collect_video_frames()
            except Exception as exc:
                _raise_with_context(exc, HARVEST_CODE, frame, worker_id, started_at)
            if video_assets:
                try:
                    video_frames = extractor.extract_all(video_assets)
                except RenderPipelineError as exc:
                    _raise_with_context(exc, exc.code, frame, worker_id, started_at)
                if video_frames:
                    try:
                        session.inject_video_frames(video_frames, video_assets)
                    except Exception as exc:
                        _raise_with_context(exc, HARVEST_CODE, frame, worker_id, started_at)
                    _require_ready(
                        session, request, frame, worker_id, cancel_event, started_at
                    )

            if request.stabilization_delay_seconds > 0:
                time.sleep(request.stabilization_delay_seconds)

            try:
                session.capture(request.frame_path(frame))
            except Exception as exc:
                _raise_with_context(exc, CAPTURE_CODE, frame, worker_id, started_at)

            try:
                audio_assets.extend(session.collect_audio_assets())
            except Exception as exc:
                _raise_with_context(exc, HARVEST_CODE, frame, worker_id, started_at)
            counter.increment()
    finally:
        session.close()

    LOGGER.info(
        "render_composition.render.worker_finished: worker %d (%d audio declarations)",
        worker_id,
        len(audio_assets),
    )
    return tuple(audio_assets)


def _verify_frames(request: RenderFramesRequest, started_at: float) -> Tuple[str, ...]:
    frame_paths = tuple(
        request.frame_path(frame) for frame in range(request.config.duration_in_frames)
    )
    missing = [path for path in frame_paths if not os.path.isfile(path)]
    if missing:
        raise RenderPipelineError(
            MISSING_FRAMES_CODE,
            f"{len(missing)} frame files missing, first: {os.path.basename(missing[0])}",
            elapsed_seconds=time.monotonic() - started_at,
        )
    return frame_paths


def render_frames(
    request: RenderFramesRequest,
    registry: CompositionRegistry | None = None,
    session_factory: SessionFactory | None = None,
    on_progress: FrameProgressCallback | None = None,
) -> RenderResult:
    """Capture every frame of the composition into request.output_dir.

    Either every frame is written and the deduplicated audio timeline is
    returned, or the first fatal worker error is raised after the remaining
    workers have been cancelled.
    """
    started_at = time.monotonic()
    worker_ranges = partition_frames(request.config.duration_in_frames, request.concurrency)
    factory = session_factory or _default_session_factory(request, registry)
    os.makedirs(request.output_dir, exist_ok=True)

    extractor = VideoFrameExtractor(
        public_dir=request.public_dir,
        ffmpeg_path=request.ffmpeg_path,
        strict=request.strict_video_frames,
    )
    cancel_event = threading.Event()
    counter = _FrameCounter(on_progress)
    worker_audio: dict[int, Tuple[AudioAsset, ...]] = {}
    first_error: Exception | None = None

    LOGGER.info(
        "render_composition.render.started: %d frames at %d fps on %d workers",
        request.config.duration_in_frames,
        request.config.fps,
        len(worker_ranges),
    )
    with ThreadPoolExecutor(
        max_workers=len(worker_ranges), thread_name_prefix="render-worker"
    ) as executor:
        futures = {
            executor.submit(
                _render_worker,
                worker_range,
                request,
                factory,
                extractor,
                cancel_event,
                counter,
                started_at,
            ): worker_range
            for worker_range in worker_ranges
        }
        for future in as_completed(futures):
            worker_range = futures[future]
            try:
                worker_audio[worker_range.worker_id] = future.result()
            except Exception as exc:
                if first_error is None:
                    first_error = exc
                    cancel_event.set()
                    LOGGER.error(
                        "render_composition.render.worker_failed: worker %d: %s",
                        worker_range.worker_id,
                        str(exc).strip(),
                    )

    if first_error is not None:
        raise first_error

    frame_paths = _verify_frames(request, started_at)
    audio_assets = dedupe_audio_assets(
        asset
        for worker_id in sorted(worker_audio)
        for asset in worker_audio[worker_id]
    )
    elapsed_seconds = time.monotonic() - started_at
    LOGGER.info(
        "render_composition.render.finished: %d frames, %d audio assets in %.1fs",
        len(frame_paths),
        len(audio_assets),
        elapsed_seconds,
    )
    return RenderResult(
        audio_assets=audio_assets,
        frame_count=len(frame_paths),
        frame_paths=frame_paths,
        elapsed_seconds=elapsed_seconds,
    )
