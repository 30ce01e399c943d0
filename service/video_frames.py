"""Still-frame extraction for videos embedded in compositions."""

from __future__ import annotations

import base64
import logging
import os
import subprocess
import tempfile
from typing import Iterable, Tuple

from domain.composition import VideoFrameAsset
from service.render_session import (
    FFMPEG_EXEC_CODE,
    FFMPEG_NOT_FOUND_CODE,
    FFMPEG_TIMEOUT_CODE,
    VIDEO_FRAME_CODE,
    RenderPipelineError,
)

LOGGER = logging.getLogger("render_composition.video_frames")

PUBLIC_DIR_CANDIDATES = ("public", "static", "assets")
DATA_URI_PREFIX = "data:image/png;base64,"
DEFAULT_EXTRACT_TIMEOUT_SECONDS = 30.0


def resolve_asset_path(
    src: str, public_dir: str | None = None, base_dir: str | None = None
) -> str:
    """Map a root-relative asset URL onto a local file when one exists.

    Only sources such as "/media/clip.mp4" are searched. The public
    directories are tried before the source as a filesystem path. Absolute
    URLs, protocol-relative sources and plain relative paths are returned as is.
    """
    if not src.startswith("/") or src.startswith("//"):
        return src

    relative = src.lstrip("/")
    search_dirs: list[str] = []
    if public_dir:
        search_dirs.append(public_dir)
    root_dir = base_dir or os.getcwd()
    search_dirs.extend(os.path.join(root_dir, name) for name in PUBLIC_DIR_CANDIDATES)

    for directory in search_dirs:
        candidate = os.path.join(directory, relative)
        if os.path.isfile(candidate):
            return candidate
    if os.path.isfile(src):
        return src
    LOGGER.debug("render_composition.asset.not_found: %s", src)
    return src


def encode_png_data_uri(png_bytes: bytes) -> str:
    return DATA_URI_PREFIX + base64.b64encode(png_bytes).decode("ascii")


def decode_png_data_uri(data_uri: str) -> bytes:
    if not data_uri.startswith(DATA_URI_PREFIX):
        raise ValueError("not a PNG data URI")
    return base64.b64decode(data_uri[len(DATA_URI_PREFIX):])


def build_extract_command(
    ffmpeg_path: str, source_path: str, time_seconds: float, output_path: str
) -> list[str]:
    return [
        ffmpeg_path,
        "-y",
        "-v",
        "error",
        "-ss",
        f"{time_seconds:.6f}",
        "-i",
        source_path,
        "-frames:v",
        "1",
        output_path,
    ]


class VideoFrameExtractor:
    """Extracts one PNG per (video, time) pair and returns it as a data URI."""

    def __init__(
        self,
        public_dir: str | None = None,
        ffmpeg_path: str = "ffmpeg",
        timeout_seconds: float = DEFAULT_EXTRACT_TIMEOUT_SECONDS,
        strict: bool = False,
        base_dir: str | None = None,
    ) -> None:
        self.public_dir = public_dir
        self.ffmpeg_path = ffmpeg_path
        self.timeout_seconds = timeout_seconds
        self.strict = strict
        self.base_dir = base_dir

    def extract(self, asset: VideoFrameAsset) -> str:
        """Extract the frame of asset.src at asset.time; raise on failure."""
        source_path = resolve_asset_path(asset.src, self.public_dir, self.base_dir)
        with tempfile.TemporaryDirectory(prefix="render-composition-frame-") as work_dir:
            output_path = os.path.join(work_dir, "frame.png")
            command = build_extract_command(
                self.ffmpeg_path, source_path, asset.time, output_path
            )
            try:
                result = subprocess.run(
                    command,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    encoding="utf-8",
                    errors="replace",
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise RenderPipelineError(
                    FFMPEG_NOT_FOUND_CODE, f"ffmpeg not found: {self.ffmpeg_path}"
                ) from exc
            except OSError as exc:
                raise RenderPipelineError(
                    FFMPEG_EXEC_CODE, f"cannot run ffmpeg at {self.ffmpeg_path}: {exc}"
                ) from exc
            except subprocess.TimeoutExpired as exc:
                raise RenderPipelineError(
                    FFMPEG_TIMEOUT_CODE,
                    f"frame extraction timed out for {asset.src} at {asset.time:.3f}s",
                ) from exc
            if result.returncode != 0 or not os.path.isfile(output_path):
                raise RenderPipelineError(
                    VIDEO_FRAME_CODE,
                    f"could not extract {asset.src} at {asset.time:.3f}s: "
                    f"{result.stderr.strip()}",
                )
            with open(output_path, "rb") as file_handle:
                return encode_png_data_uri(file_handle.read())

    def extract_all(self, assets: Iterable[VideoFrameAsset]) -> dict[str, str]:
        """Extract every asset; failures are logged and omitted unless strict."""
        frames: dict[str, str] = {}
        extracted: dict[Tuple[str, float], str] = {}
        for asset in assets:
            key = (asset.src, asset.time)
            if key in extracted:
                frames[asset.id] = extracted[key]
                continue
            try:
                data_uri = self.extract(asset)
            except RenderPipelineError as exc:
                if self.strict:
                    raise
                LOGGER.warning(
                    "%s: %s (%s)", VIDEO_FRAME_CODE, asset.id, str(exc).strip()
                )
                continue
            extracted[key] = data_uri
            frames[asset.id] = data_uri
        return frames

