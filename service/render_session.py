"""Rendering-session protocol shared by the browser and local surfaces."""

from __future__ import annotations

from typing import Mapping, Protocol, Sequence, Tuple

from domain.composition import AudioAsset, VideoFrameAsset

READY_TIMEOUT_CODE = "render_composition.render.ready_timeout"
NAVIGATE_CODE = "render_composition.render.navigate_failed"
ADVANCE_CODE = "render_composition.render.advance_failed"
READY_FAILED_CODE = "render_composition.render.ready_failed"
HARVEST_CODE = "render_composition.render.harvest_failed"
CAPTURE_CODE = "render_composition.render.capture_failed"
CANCELLED_CODE = "render_composition.render.cancelled"
MISSING_FRAMES_CODE = "render_composition.render.missing_frames"
DISCOVERY_CODE = "render_composition.render.discovery_failed"
BROWSER_CODE = "render_composition.render.browser_unavailable"
FFMPEG_NOT_FOUND_CODE = "render_composition.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "render_composition.ffmpeg.exec_error"
FFMPEG_PROCESS_CODE = "render_composition.ffmpeg.process_failed"
FFMPEG_TIMEOUT_CODE = "render_composition.ffmpeg.timeout"
FFMPEG_PROBE_CODE = "render_composition.ffmpeg.probe_error"
VIDEO_FRAME_CODE = "render_composition.video_frame.extract_failed"


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code and render position."""

    def __init__(
        self,
        code: str,
        message: str,
        frame: int | None = None,
        worker_id: int | None = None,
        elapsed_seconds: float | None = None,
    ) -> None:
        details = []
        if worker_id is not None:
            details.append(f"worker={worker_id}")
        if frame is not None:
            details.append(f"frame={frame}")
        if elapsed_seconds is not None:
            details.append(f"elapsed={elapsed_seconds:.1f}s")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)
        self.code = code
        self.frame = frame
        self.worker_id = worker_id
        self.elapsed_seconds = elapsed_seconds


class RenderSession(Protocol):
    """One isolated rendering surface, driven frame by frame.

    Methods are called from a single worker thread in protocol order:
    navigate (first frame), advance (later frames), wait_until_ready,
    wait_for_network_idle (first frame), collect_video_frames,
    inject_video_frames, capture, collect_audio_assets.
    """

    def navigate(self, frame: int) -> None: ...

    def advance(self, frame: int) -> None: ...

    def wait_until_ready(self, timeout_seconds: float) -> bool: ...

    def wait_for_network_idle(self, timeout_seconds: float) -> None: ...

    def collect_video_frames(self) -> Tuple[VideoFrameAsset, ...]: ...

    def inject_video_frames(
        self, frames: Mapping[str, str], assets: Sequence[VideoFrameAsset]
    ) -> None: ...

    def capture(self, path: str) -> None: ...

    def collect_audio_assets(self) -> Tuple[AudioAsset, ...]: ...

    def close(self) -> None: ...
