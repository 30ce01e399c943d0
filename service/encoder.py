"""ffmpeg encoding of captured frame sequences with a rebuilt audio timeline."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
import os
import re
import shutil
import subprocess
import threading
from typing import Callable, Sequence, Tuple

from domain.composition import (
    FRAME_FILE_PATTERN,
    FRAME_FILE_PREFIX,
    FRAME_FILE_SUFFIX,
    AudioAsset,
    RenderValidationError,
)
from service.render_session import (
    FFMPEG_EXEC_CODE,
    FFMPEG_NOT_FOUND_CODE,
    FFMPEG_PROBE_CODE,
    FFMPEG_PROCESS_CODE,
    FFMPEG_TIMEOUT_CODE,
    RenderPipelineError,
)

LOGGER = logging.getLogger("render_composition.encoder")

NO_FRAMES_CODE = "render_composition.encode.no_frames"
FRAME_GAP_CODE = "render_composition.encode.frame_gap"
INVALID_FORMAT_CODE = "render_composition.input.invalid_format"
INVALID_ENCODE_CODE = "render_composition.input.invalid_encode_request"

FORMAT_AUTO = "auto"
FORMAT_MP4 = "mp4"
FORMAT_WEBM = "webm"
FORMAT_GIF = "gif"
FORMAT_WEBP = "webp"
OUTPUT_FORMATS = (FORMAT_MP4, FORMAT_WEBM, FORMAT_GIF, FORMAT_WEBP)
EXTENSION_FORMATS = {
    ".mp4": FORMAT_MP4,
    ".mov": FORMAT_MP4,
    ".mkv": FORMAT_MP4,
    ".m4v": FORMAT_MP4,
    ".webm": FORMAT_WEBM,
    ".gif": FORMAT_GIF,
    ".webp": FORMAT_WEBP,
}

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_CRF = "18"
VP9_CODEC = "libvpx-vp9"
VP9_CRF = "32"
AAC_CODEC = "aac"
OPUS_CODEC = "libopus"
AUDIO_BITRATE = "192k"
AUDIO_CHANNELS = "2"
WEBP_CODEC = "libwebp"
WEBP_QUALITY = "80"
GIF_PALETTE_FILTER = "[0:v]split[s0][s1];[s0]palettegen[p];[s1][p]paletteuse"
AMIX_DROPOUT_TRANSITION = 1000
STDERR_TAIL_LINES = 20

FRAME_FILE_REGEX = re.compile(
    rf"^{re.escape(FRAME_FILE_PREFIX)}(\d+){re.escape(FRAME_FILE_SUFFIX)}$"
)

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class EncodeRequest:
    """Inputs for muxing one frame directory into an output file."""

    frames_dir: str
    fps: int
    output_file: str
    audio_assets: Tuple[AudioAsset, ...] = ()
    ffmpeg_path: str = "ffmpeg"
    timeout_seconds: float | None = None
    on_progress: ProgressCallback | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.fps, bool) or not isinstance(self.fps, int) or self.fps <= 0:
            raise RenderValidationError(
                INVALID_ENCODE_CODE, f"fps must be a positive integer: {self.fps!r}"
            )
        if not self.output_file:
            raise RenderValidationError(INVALID_ENCODE_CODE, "output file is required")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise RenderValidationError(
                INVALID_ENCODE_CODE, "encode timeout must be positive"
            )
        object.__setattr__(self, "audio_assets", tuple(self.audio_assets))

    @property
    def frame_pattern(self) -> str:
        return os.path.join(self.frames_dir, FRAME_FILE_PATTERN)


def ensure_ffmpeg_available(ffmpeg_path: str = "ffmpeg") -> str:
    """Ensure ffmpeg is installed and executable; return its resolved path."""
    resolved_path = shutil.which(ffmpeg_path)
    if not resolved_path:
        raise RenderPipelineError(
            FFMPEG_NOT_FOUND_CODE, f"ffmpeg not found: {ffmpeg_path}"
        )
    try:
        subprocess.run(
            [resolved_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, "ffmpeg exists but could not be executed"
        ) from exc
    return resolved_path


def probe_duration_seconds(media_path: str, ffprobe_path: str = "ffprobe") -> float:
    """Return the container duration in seconds reported by ffprobe."""
    resolved_path = shutil.which(ffprobe_path)
    if not resolved_path:
        raise RenderPipelineError(
            FFMPEG_NOT_FOUND_CODE, f"ffprobe not found: {ffprobe_path}"
        )
    result = subprocess.run(
        [
            resolved_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            media_path,
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise RenderPipelineError(
            FFMPEG_PROBE_CODE, f"ffprobe failed: {result.stderr.strip()}"
        )
    try:
        return float(result.stdout.strip())
    except ValueError as exc:
        raise RenderPipelineError(
            FFMPEG_PROBE_CODE, f"duration unavailable: {media_path}"
        ) from exc


def list_frame_files(frames_dir: str) -> list[str]:
    """List captured frames in index order, rejecting gaps in the numbering."""
    if not os.path.isdir(frames_dir):
        raise RenderPipelineError(NO_FRAMES_CODE, f"frames dir not found: {frames_dir}")

    indexed: list[Tuple[int, str]] = []
    for entry in os.listdir(frames_dir):
        match_value = FRAME_FILE_REGEX.match(entry)
        if match_value:
            indexed.append((int(match_value.group(1)), entry))
    if not indexed:
        raise RenderPipelineError(NO_FRAMES_CODE, f"no frames found in {frames_dir}")

    indexed.sort()
    for expected, (index, entry) in enumerate(indexed):
        if index != expected:
            raise RenderPipelineError(
                FRAME_GAP_CODE,
                f"frame sequence has a gap: expected {expected}, found {entry}",
            )
    return [os.path.join(frames_dir, entry) for _, entry in indexed]


def _format_number(value: float) -> str:
    """Format a float for a filter graph without a trailing .0."""
    return f"{value:g}" if value != int(value) else str(int(value))


def build_audio_filter_graph(assets: Sequence[AudioAsset], fps: int) -> str:
    """Build the per-asset trim/delay/volume stages and the final mix."""
    if not assets:
        return ""
    stages = []
    for index, asset in enumerate(assets):
        delay_ms = round(asset.start_frame / fps * 1000)
        start_seconds = asset.start_from / fps
        stages.append(
            f"[{index + 1}:a]atrim=start={_format_number(start_seconds)},"
            f"asetpts=PTS-STARTPTS,adelay={delay_ms}|{delay_ms},"
            f"volume={_format_number(float(asset.volume))}[a{index}]"
        )
    mix_inputs = "".join(f"[a{index}]" for index in range(len(assets)))
    stages.append(
        f"{mix_inputs}amix=inputs={len(assets)}:duration=longest:"
        f"dropout_transition={AMIX_DROPOUT_TRANSITION}[a]"
    )
    return ";".join(stages)


def select_output_format(output_file: str, requested: str = FORMAT_AUTO) -> str:
    """Return mp4, webm, gif or webp for an output path."""
    normalized = (requested or FORMAT_AUTO).strip().lower()
    if normalized != FORMAT_AUTO:
        if normalized not in OUTPUT_FORMATS:
            raise RenderValidationError(
                INVALID_FORMAT_CODE, f"unsupported output format: {requested!r}"
            )
        return normalized
    extension = os.path.splitext(output_file)[1].lower()
    return EXTENSION_FORMATS.get(extension, FORMAT_MP4)


def _build_input_args(request: EncodeRequest, include_audio: bool) -> list[str]:
    command = [
        request.ffmpeg_path,
        "-y",
        "-framerate",
        str(request.fps),
        "-i",
        request.frame_pattern,
    ]
    if include_audio:
        for asset in request.audio_assets:
            command.extend(["-i", asset.src])
    return command


def _progress_args() -> list[str]:
    return ["-progress", "pipe:1", "-nostats"]


def build_video_command(request: EncodeRequest, output_format: str = FORMAT_MP4) -> list[str]:
    """Build the ffmpeg command for a video container output."""
    has_audio = bool(request.audio_assets)
    command = _build_input_args(request, include_audio=has_audio)
    if has_audio:
        command.extend(
            [
                "-filter_complex",
                build_audio_filter_graph(request.audio_assets, request.fps),
                "-map",
                "0:v",
                "-map",
                "[a]",
            ]
        )
    if output_format == FORMAT_WEBM:
        command.extend(
            ["-c:v", VP9_CODEC, "-crf", VP9_CRF, "-b:v", "0", "-pix_fmt", H264_PIXEL_FORMAT]
        )
        audio_codec = OPUS_CODEC
    else:
        command.extend(["-c:v", H264_CODEC, "-pix_fmt", H264_PIXEL_FORMAT, "-crf", H264_CRF])
        audio_codec = AAC_CODEC
    if has_audio:
        command.extend(
            [
                "-c:a",
                audio_codec,
                "-b:a",
                AUDIO_BITRATE,
                "-ac",
                AUDIO_CHANNELS,
                "-shortest",
            ]
        )
    else:
        command.append("-an")
    command.extend(_progress_args())
    command.append(request.output_file)
    return command


def build_gif_command(request: EncodeRequest) -> list[str]:
    """Build the palette-based animated GIF command; audio is never muxed."""
    command = _build_input_args(request, include_audio=False)
    command.extend(["-filter_complex", GIF_PALETTE_FILTER, "-loop", "0", "-an"])
    command.extend(_progress_args())
    command.append(request.output_file)
    return command


def build_webp_command(request: EncodeRequest) -> list[str]:
    """Build the animated WebP command; audio is never muxed."""
    command = _build_input_args(request, include_audio=False)
    command.extend(
        ["-c:v", WEBP_CODEC, "-quality", WEBP_QUALITY, "-loop", "0", "-an"]
    )
    command.extend(_progress_args())
    command.append(request.output_file)
    return command


class ProgressTracker:
    """Turns ffmpeg progress output into a monotonic, clamped percentage."""

    def __init__(self, total_seconds: float, callback: ProgressCallback | None) -> None:
        self._total_seconds = total_seconds
        self._callback = callback
        self._percent = 0.0
        self._reported = False

    @property
    def percent(self) -> float:
        return self._percent

    def report(self, percent: float) -> None:
        clamped = max(0.0, min(100.0, percent))
        if self._reported and clamped <= self._percent:
            return
        self._reported = True
        self._percent = clamped
        if self._callback is not None:
            self._callback(clamped)

    def feed(self, line: str) -> None:
        seconds = parse_progress_seconds(line)
        if seconds is None or self._total_seconds <= 0:
            return
        self.report(seconds / self._total_seconds * 100.0)

    def finish(self) -> None:
        self.report(100.0)


def parse_progress_seconds(line: str) -> float | None:
    """Parse an out_time_us/out_time_ms progress line into seconds."""
    key, _, value = line.strip().partition("=")
    # ffmpeg writes out_time_ms in microseconds as well.
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return int(value) / 1_000_000
    except ValueError:
        return None


def _drain_stream(stream, sink: deque) -> None:
    for line in stream:
        sink.append(line.rstrip())


def run_ffmpeg(
    command: Sequence[str],
    total_seconds: float,
    on_progress: ProgressCallback | None = None,
    timeout_seconds: float | None = None,
) -> None:
    """Run ffmpeg, streaming progress and failing with the stderr tail."""
    LOGGER.debug("render_composition.ffmpeg.command: %s", " ".join(command))
    try:
        process = subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as exc:
        raise RenderPipelineError(
            FFMPEG_NOT_FOUND_CODE, f"ffmpeg not found: {command[0]}"
        ) from exc
    except OSError as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, f"ffmpeg could not be started: {exc}"
        ) from exc

    stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
    stderr_thread = threading.Thread(
        target=_drain_stream, args=(process.stderr, stderr_tail), daemon=True
    )
    stderr_thread.start()

    timed_out = threading.Event()

    def kill_on_timeout() -> None:
        timed_out.set()
        process.kill()

    timer = None
    if timeout_seconds is not None:
        timer = threading.Timer(timeout_seconds, kill_on_timeout)
        timer.daemon = True
        timer.start()

    tracker = ProgressTracker(total_seconds, on_progress)
    try:
        for line in process.stdout:
            tracker.feed(line)
        return_code = process.wait()
    finally:
        if timer is not None:
            timer.cancel()
        stderr_thread.join(timeout=5)

    if timed_out.is_set():
        raise RenderPipelineError(
            FFMPEG_TIMEOUT_CODE, f"ffmpeg timed out after {timeout_seconds}s"
        )
    if return_code != 0:
        tail = "\n".join(stderr_tail)
        raise RenderPipelineError(
            FFMPEG_PROCESS_CODE, f"ffmpeg exited with {return_code}: {tail}"
        )
    tracker.finish()


def _encode(request: EncodeRequest, command: list[str]) -> str:
    frame_files = list_frame_files(request.frames_dir)
    ensure_ffmpeg_available(request.ffmpeg_path)
    output_dir = os.path.dirname(os.path.abspath(request.output_file))
    os.makedirs(output_dir, exist_ok=True)
    LOGGER.info(
        "render_composition.encode.started: %d frames, %d audio assets -> %s",
        len(frame_files),
        len(request.audio_assets),
        request.output_file,
    )
    run_ffmpeg(
        command,
        total_seconds=len(frame_files) / request.fps,
        on_progress=request.on_progress,
        timeout_seconds=request.timeout_seconds,
    )
    LOGGER.info("render_composition.encode.finished: %s", request.output_file)
    return request.output_file


def encode_video(request: EncodeRequest, output_format: str = FORMAT_MP4) -> str:
    """Mux frames and the mixed audio timeline into mp4/mov/mkv or webm."""
    return _encode(request, build_video_command(request, output_format))


def encode_gif(request: EncodeRequest) -> str:
    if request.audio_assets:
        LOGGER.warning("render_composition.encode.audio_dropped: gif output has no audio")
    return _encode(request, build_gif_command(request))


def encode_webp(request: EncodeRequest) -> str:
    if request.audio_assets:
        LOGGER.warning("render_composition.encode.audio_dropped: webp output has no audio")
    return _encode(request, build_webp_command(request))


def encode_output(request: EncodeRequest, output_format: str = FORMAT_AUTO) -> str:
    """Encode with the path selected by the output extension or explicit format."""
    selected = select_output_format(request.output_file, output_format)
    if selected == FORMAT_GIF:
        return encode_gif(request)
    if selected == FORMAT_WEBP:
        return encode_webp(request)
    return encode_video(request, selected)
