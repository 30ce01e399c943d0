"""End-to-end tests for local rendering and the command surface."""

from __future__ import annotations

import io
import json
import math
import shutil
import struct
import threading
import wave
from pathlib import Path
from typing import List

import pytest
from PIL import Image

import render_composition
from domain.composition import Composition, CompositionRegistry, VideoConfig
from domain.frame_context import FrameScope
from domain.timing import EXTRAPOLATE_CLAMP, interpolate
from service.encoder import EncodeRequest, encode_output, list_frame_files, probe_duration_seconds
from service.local_session import LocalSession
from service.orchestrator import RenderFramesRequest, render_frames
from service.render_session import READY_TIMEOUT_CODE, RenderPipelineError
from service.video_frames import encode_png_data_uri

SAMPLE_RATE = 44100


def write_sine_wav(path: Path, seconds: float, frequency: float = 440.0) -> None:
    """Write a mono 16-bit sine tone."""
    frame_count = int(SAMPLE_RATE * seconds)
    samples = b"".join(
        struct.pack("<h", int(12000 * math.sin(2 * math.pi * frequency * index / SAMPLE_RATE)))
        for index in range(frame_count)
    )
    with wave.open(str(path), "wb") as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(SAMPLE_RATE)
        wav_file.writeframes(samples)


def moving_box(scope: FrameScope) -> None:
    """Slide a white square across the canvas over two seconds."""
    x_value = int(
        interpolate(scope.current_frame, [0, 59], [0, 48], extrapolate_right=EXTRAPOLATE_CLAMP)
    )
    scope.draw.rectangle([x_value, 24, x_value + 15, 39], fill=(255, 255, 255, 255))


def build_registry(component) -> CompositionRegistry:
    registry = CompositionRegistry()
    registry.register(
        Composition("box", VideoConfig(width=64, height=64, fps=30, duration_in_frames=60), component)
    )
    return registry


def build_request(frames_dir: Path, **overrides) -> RenderFramesRequest:
    values = {
        "config": VideoConfig(width=64, height=64, fps=30, duration_in_frames=60),
        "output_dir": str(frames_dir),
        "composition_id": "box",
        "stabilization_delay_seconds": 0.0,
    }
    values.update(overrides)
    return RenderFramesRequest(**values)


def test_two_second_render_with_audio(tmp_path: Path) -> None:
    wav_path = tmp_path / "tone.wav"
    write_sine_wav(wav_path, 2.0)

    def component(scope: FrameScope) -> None:
        moving_box(scope)
        scope.audio(str(wav_path))

    frames_dir = tmp_path / "frames"
    result = render_frames(
        build_request(frames_dir, concurrency=3), registry=build_registry(component)
    )
    assert result.frame_count == 60
    assert len(list_frame_files(str(frames_dir))) == 60
    assert len(result.audio_assets) == 1
    assert result.audio_assets[0].start_frame == 0

    if shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None:
        pytest.skip("ffmpeg/ffprobe not available")
    output = tmp_path / "out.mp4"
    encode_output(
        EncodeRequest(str(frames_dir), 30, str(output), audio_assets=result.audio_assets)
    )
    duration = probe_duration_seconds(str(output))
    assert abs(duration - 2.0) <= 1 / 30 + 1e-3


def test_renders_are_byte_identical_across_worker_counts(tmp_path: Path) -> None:
    registry = build_registry(moving_box)
    render_frames(build_request(tmp_path / "one"), registry=registry)
    render_frames(build_request(tmp_path / "four", concurrency=4), registry=registry)
    for frame in (0, 17, 59):
        name = f"frame-{frame:05d}.png"
        assert (tmp_path / "one" / name).read_bytes() == (tmp_path / "four" / name).read_bytes()


def test_clock_is_pinned_per_frame(tmp_path: Path) -> None:
    seen: List[float] = []

    def component(scope: FrameScope) -> None:
        seen.append(scope.clock.now())

    render_frames(
        build_request(tmp_path, config=VideoConfig(8, 8, 30, 3)),
        registry=build_registry(component),
    )
    assert seen == pytest.approx([0.0, 1000 / 30, 2000 / 30])


def test_delayed_resource_holds_capture(tmp_path: Path) -> None:
    timers: List[threading.Timer] = []

    def component(scope: FrameScope) -> None:
        handle = scope.delay_render("slow-image")
        timer = threading.Timer(0.02, scope.continue_render, args=(handle,))
        timers.append(timer)
        timer.start()

    result = render_frames(
        build_request(tmp_path, config=VideoConfig(8, 8, 30, 3), timeout_seconds=5.0),
        registry=build_registry(component),
    )
    assert result.frame_count == 3
    for timer in timers:
        timer.cancel()


def test_unreleased_resource_times_out(tmp_path: Path) -> None:
    def component(scope: FrameScope) -> None:
        scope.delay_render("never")

    with pytest.raises(RenderPipelineError) as excinfo:
        render_frames(
            build_request(tmp_path, config=VideoConfig(8, 8, 30, 3), timeout_seconds=0.2),
            registry=build_registry(component),
        )
    assert excinfo.value.code == READY_TIMEOUT_CODE
    assert excinfo.value.frame == 0


def test_video_still_is_pasted_into_box(tmp_path: Path) -> None:
    def component(scope: FrameScope) -> None:
        scope.video("clip", "/clip.mp4", (2, 2, 4, 4))

    session = LocalSession(
        Composition("inlay", VideoConfig(8, 8, 30, 1), component)
    )
    session.navigate(0)
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), (255, 0, 0)).save(buffer, format="PNG")
    session.inject_video_frames(
        {"clip": encode_png_data_uri(buffer.getvalue())}, session.collect_video_frames()
    )
    frame_path = tmp_path / "frame.png"
    session.capture(str(frame_path))
    session.close()
    with Image.open(frame_path) as captured:
        assert captured.getpixel((3, 3)) == (255, 0, 0)
        assert captured.getpixel((0, 0)) == (0, 0, 0)


CLI_MODULE_SOURCE = '''
from domain.composition import Composition, VideoConfig


def draw(scope):
    scope.draw.rectangle([0, 0, scope.current_frame, 4], fill=(255, 0, 0, 255))


def register(registry):
    registry.register(Composition("strip", VideoConfig(16, 16, 10, 5), component=draw))
'''


def write_cli_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    (tmp_path / "cli_demo_compositions.py").write_text(CLI_MODULE_SOURCE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    return "cli_demo_compositions:register"


def test_cli_lists_compositions(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    target = write_cli_module(tmp_path, monkeypatch)
    assert render_composition.main(["compositions", "--compositions-module", target]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == [
        {"id": "strip", "width": 16, "height": 16, "fps": 10, "durationInFrames": 5}
    ]


def test_cli_renders_gif(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    if shutil.which("ffmpeg") is None:
        pytest.skip("ffmpeg not available")
    target = write_cli_module(tmp_path, monkeypatch)
    output = tmp_path / "strip.gif"
    frames_dir = tmp_path / "frames"
    exit_code = render_composition.main(
        [
            "render",
            "--compositions-module",
            target,
            "-o",
            str(output),
            "--frames-dir",
            str(frames_dir),
            "--duration",
            "3",
        ]
    )
    assert exit_code == 0
    assert output.is_file()
    assert len(list_frame_files(str(frames_dir))) == 3


def test_cli_rejects_invalid_props(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = write_cli_module(tmp_path, monkeypatch)
    exit_code = render_composition.main(
        ["render", "--compositions-module", target, "--props", "[1, 2]"]
    )
    assert exit_code == 1


def test_load_config_env_then_flags() -> None:
    args = render_composition.parse_args(["render", "--compositions-module", "m:f"])
    env = {
        render_composition.CONCURRENCY_ENV: "3",
        render_composition.TIMEOUT_ENV: "5",
        render_composition.FFMPEG_PATH_ENV: "/opt/ffmpeg/bin/ffmpeg",
    }
    config = render_composition.load_config(args, env)
    assert config.concurrency == 3
    assert config.timeout_seconds == 5.0
    assert config.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"

    flagged = render_composition.parse_args(
        ["render", "--compositions-module", "m:f", "-j", "2", "--ffmpeg-path", "ffmpeg"]
    )
    config = render_composition.load_config(flagged, env)
    assert config.concurrency == 2
    assert config.ffmpeg_path == "ffmpeg"

    with pytest.raises(render_composition.RenderValidationError):
        render_composition.load_config(args, {render_composition.CONCURRENCY_ENV: "zero"})
