"""Tests for the render orchestrator using scripted sessions."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, List, Mapping, Sequence, Tuple

import pytest

from domain.composition import (
    AudioAsset,
    Composition,
    CompositionRegistry,
    RenderValidationError,
    VideoConfig,
    VideoFrameAsset,
    WorkerRange,
)
from service.orchestrator import (
    RenderFramesRequest,
    render_frames,
    select_composition,
)
from service.render_session import (
    ADVANCE_CODE,
    FFMPEG_NOT_FOUND_CODE,
    HARVEST_CODE,
    MISSING_FRAMES_CODE,
    NAVIGATE_CODE,
    READY_TIMEOUT_CODE,
    RenderPipelineError,
)


class ScriptedSession:
    """Session double that records every protocol call it receives."""

    def __init__(
        self,
        worker_range: WorkerRange,
        log: List[str],
        lock: threading.Lock,
        fail_ready_at: int | None = None,
        fail_navigate: bool = False,
        skip_capture_at: int | None = None,
        capture_delay: float = 0.0,
        video_assets: Tuple[VideoFrameAsset, ...] = (),
        audio_volume: float = 1.0,
        fail_audio_at: int | None = None,
        hang_ready: bool = False,
    ) -> None:
        self.worker_id = worker_range.worker_id
        self.log = log
        self.lock = lock
        self.fail_ready_at = fail_ready_at
        self.fail_navigate = fail_navigate
        self.skip_capture_at = skip_capture_at
        self.capture_delay = capture_delay
        self.video_assets = video_assets
        self.audio_volume = audio_volume
        self.fail_audio_at = fail_audio_at
        self.hang_ready = hang_ready
        self.frame = -1
        self.captured: List[int] = []

    def record(self, event: str) -> None:
        with self.lock:
            self.log.append(event)

    def navigate(self, frame: int) -> None:
        if self.fail_navigate:
            raise RuntimeError("page crashed")
        self.frame = frame
        self.record(f"navigate:{frame}")

    def advance(self, frame: int) -> None:
        self.frame = frame
        self.record(f"advance:{frame}")

    def wait_until_ready(self, timeout_seconds: float) -> bool:
        self.record(f"ready:{self.frame}")
        if self.hang_ready:
            time.sleep(timeout_seconds)
            return False
        return self.frame != self.fail_ready_at

    def wait_for_network_idle(self, timeout_seconds: float) -> None:
        self.record(f"network:{self.frame}")

    def collect_video_frames(self) -> Tuple[VideoFrameAsset, ...]:
        self.record(f"video:{self.frame}")
        return self.video_assets

    def inject_video_frames(
        self, frames: Mapping[str, str], assets: Sequence[VideoFrameAsset]
    ) -> None:
        self.record(f"inject:{self.frame}")

    def capture(self, path: str) -> None:
        if self.capture_delay:
            time.sleep(self.capture_delay)
        self.record(f"capture:{self.frame}")
        self.captured.append(self.frame)
        if self.frame != self.skip_capture_at:
            Path(path).write_bytes(b"png")

    def collect_audio_assets(self) -> Tuple[AudioAsset, ...]:
        self.record(f"audio:{self.frame}")
        if self.frame == self.fail_audio_at:
            raise RuntimeError("Target page, context or browser has been closed")
        return (AudioAsset(src="/music.wav", volume=self.audio_volume),)

    def close(self) -> None:
        self.record(f"close:{self.worker_id}")


def scripted_factory(
    log: List[str], sessions: List[ScriptedSession], **options
) -> Callable[[WorkerRange], ScriptedSession]:
    lock = threading.Lock()

    def factory(worker_range: WorkerRange) -> ScriptedSession:
        per_worker = options.get("per_worker", {}).get(worker_range.worker_id, {})
        shared = {key: value for key, value in options.items() if key != "per_worker"}
        session = ScriptedSession(worker_range, log, lock, **{**shared, **per_worker})
        with lock:
            sessions.append(session)
        return session

    return factory


def make_request(tmp_path: Path, frames: int, **overrides) -> RenderFramesRequest:
    values = {
        "config": VideoConfig(width=16, height=16, fps=30, duration_in_frames=frames),
        "output_dir": str(tmp_path / "frames"),
        "stabilization_delay_seconds": 0.0,
        "ffmpeg_path": str(tmp_path / "no-ffmpeg"),
    }
    values.update(overrides)
    return RenderFramesRequest(**values)


def test_frames_follow_protocol_order(tmp_path: Path) -> None:
    log: List[str] = []
    sessions: List[ScriptedSession] = []
    result = render_frames(
        make_request(tmp_path, 3), session_factory=scripted_factory(log, sessions)
    )
    assert log == [
        "navigate:0",
        "ready:0",
        "network:0",
        "video:0",
        "capture:0",
        "audio:0",
        "advance:1",
        "ready:1",
        "video:1",
        "capture:1",
        "audio:1",
        "advance:2",
        "ready:2",
        "video:2",
        "capture:2",
        "audio:2",
        "close:0",
    ]
    assert result.frame_count == 3
    assert result.audio_assets == (AudioAsset(src="/music.wav"),)
    assert all(Path(path).is_file() for path in result.frame_paths)


def test_workers_cover_all_frames_and_dedupe_audio(tmp_path: Path) -> None:
    log: List[str] = []
    sessions: List[ScriptedSession] = []
    progress: List[int] = []
    result = render_frames(
        make_request(tmp_path, 10, concurrency=3),
        session_factory=scripted_factory(
            log, sessions, per_worker={2: {"audio_volume": 0.5}}
        ),
        on_progress=progress.append,
    )
    captured = sorted(frame for session in sessions for frame in session.captured)
    assert captured == list(range(10))
    assert progress == list(range(1, 11))
    assert result.audio_assets == (
        AudioAsset(src="/music.wav"),
        AudioAsset(src="/music.wav", volume=0.5),
    )
    navigations = sorted(event for event in log if event.startswith("navigate"))
    assert navigations == ["navigate:0", "navigate:4", "navigate:8"]


def test_ready_timeout_is_fatal(tmp_path: Path) -> None:
    log: List[str] = []
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            make_request(tmp_path, 5, timeout_seconds=0.1),
            session_factory=scripted_factory(log, [], fail_ready_at=2),
        )
    assert excinfo.value.code == READY_TIMEOUT_CODE
    assert excinfo.value.frame == 2
    assert excinfo.value.worker_id == 0
    assert "capture:2" not in log
    assert "close:0" in log


def test_failed_worker_cancels_siblings(tmp_path: Path) -> None:
    log: List[str] = []
    sessions: List[ScriptedSession] = []
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            make_request(tmp_path, 40, concurrency=2),
            session_factory=scripted_factory(
                log,
                sessions,
                capture_delay=0.05,
                per_worker={0: {"fail_navigate": True}},
            ),
        )
    assert excinfo.value.code == NAVIGATE_CODE
    assert excinfo.value.worker_id == 0
    sibling = next(session for session in sessions if session.worker_id == 1)
    assert len(sibling.captured) < 20


def test_session_error_during_harvest_carries_context(tmp_path: Path) -> None:
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            make_request(tmp_path, 10, concurrency=2),
            session_factory=scripted_factory(
                [], [], per_worker={1: {"fail_audio_at": 6}}
            ),
        )
    assert excinfo.value.code == HARVEST_CODE
    assert excinfo.value.frame == 6
    assert excinfo.value.worker_id == 1
    assert "browser has been closed" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_failed_worker_interrupts_sibling_ready_wait(tmp_path: Path) -> None:
    log: List[str] = []
    sessions: List[ScriptedSession] = []
    started = time.monotonic()
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            make_request(tmp_path, 10, concurrency=2, timeout_seconds=30.0),
            session_factory=scripted_factory(
                log,
                sessions,
                per_worker={0: {"fail_navigate": True}, 1: {"hang_ready": True}},
            ),
        )
    assert time.monotonic() - started < 10.0
    assert excinfo.value.code == NAVIGATE_CODE
    assert "close:1" in log
    sibling = next(session for session in sessions if session.worker_id == 1)
    assert sibling.captured == []


def test_missing_frame_file_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            make_request(tmp_path, 4),
            session_factory=scripted_factory([], [], skip_capture_at=3),
        )
    assert excinfo.value.code == MISSING_FRAMES_CODE


def test_failed_video_extraction_is_skipped(tmp_path: Path) -> None:
    log: List[str] = []
    assets = (VideoFrameAsset(id="clip", src="/clip.mp4", time=0.0),)
    result = render_frames(
        make_request(tmp_path, 2),
        session_factory=scripted_factory(log, [], video_assets=assets),
    )
    assert result.frame_count == 2
    assert not any(event.startswith("inject") for event in log)


def test_strict_video_extraction_aborts(tmp_path: Path) -> None:
    assets = (VideoFrameAsset(id="clip", src="/clip.mp4", time=0.0),)
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            make_request(tmp_path, 2, strict_video_frames=True),
            session_factory=scripted_factory([], [], video_assets=assets),
        )
    assert excinfo.value.code == FFMPEG_NOT_FOUND_CODE
    assert excinfo.value.frame == 0


def test_session_start_failure_is_fatal(tmp_path: Path) -> None:
    def failing_factory(worker_range: WorkerRange):
        raise RuntimeError("no browser")

    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(make_request(tmp_path, 2), session_factory=failing_factory)
    assert excinfo.value.code == NAVIGATE_CODE
    assert "no browser" in str(excinfo.value)


def test_content_error_on_advance_carries_frame(tmp_path: Path) -> None:
    def component(scope) -> None:
        if scope.current_frame == 1:
            raise ValueError("bad frame")

    registry = CompositionRegistry()
    registry.register(
        Composition("main", VideoConfig(8, 8, 30, 3), component=component)
    )
    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(make_request(tmp_path, 3), registry=registry)
    assert excinfo.value.code == ADVANCE_CODE
    assert excinfo.value.frame == 1


def test_request_validation_happens_before_workers(tmp_path: Path) -> None:
    with pytest.raises(RenderValidationError):
        make_request(tmp_path, 10, concurrency=0)
    with pytest.raises(RenderValidationError):
        make_request(tmp_path, 10, timeout_seconds=0)
    with pytest.raises(RenderValidationError):
        render_frames(make_request(tmp_path, 10))
    assert not (tmp_path / "frames").exists()


def test_select_composition() -> None:
    registry = CompositionRegistry()
    first = registry.register(Composition("intro", VideoConfig(8, 8, 30, 10)))
    second = registry.register(Composition("outro", VideoConfig(8, 8, 30, 10)))
    assert select_composition(registry) is first
    assert select_composition(registry, "outro") is second
    with pytest.raises(RenderValidationError):
        select_composition(CompositionRegistry())
