#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10",
#   "playwright>=1.40"
# ]
# ///
"""Render a frame-accurate composition into a video or animated image."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import importlib
import json
import logging
import os
import shutil
import sys
import tempfile
from typing import Any, Sequence

from domain.composition import (
    INVALID_CONFIG_CODE,
    INVALID_PROPS_CODE,
    CompositionRegistry,
    RenderValidationError,
    VideoConfig,
    normalize_input_props,
)
from service.browser_session import CHROMIUM_EXECUTABLE_ENV
from service.encoder import EncodeRequest, encode_output, select_output_format
from service.orchestrator import (
    RenderFramesRequest,
    load_registry,
    render_frames,
    select_composition,
)
from service.render_session import RenderPipelineError
from service.video_frames import resolve_asset_path

LOGGER = logging.getLogger("render_composition")

FFMPEG_PATH_ENV = "RENDER_COMPOSITION_FFMPEG_PATH"
CONCURRENCY_ENV = "RENDER_COMPOSITION_CONCURRENCY"
TIMEOUT_ENV = "RENDER_COMPOSITION_TIMEOUT_SECONDS"
PUBLIC_DIR_ENV = "RENDER_COMPOSITION_PUBLIC_DIR"
TMP_DIR_ENV = "RENDER_COMPOSITION_TMP_DIR"
LOG_LEVEL_ENV = "RENDER_COMPOSITION_LOG_LEVEL"

DEFAULT_TMP_DIR = ".render-composition-tmp"
DEFAULT_TIMEOUT_SECONDS = 60.0
DISCOVERY_TIMEOUT_SECONDS = 10.0
FALLBACK_CONFIG = VideoConfig(width=1280, height=720, fps=30, duration_in_frames=100)
PROGRESS_LOG_STEP_PERCENT = 10


@dataclass(frozen=True)
class CliConfig:
    """Runtime settings resolved from the environment and flags."""

    ffmpeg_path: str
    concurrency: int
    timeout_seconds: float
    public_dir: str | None
    tmp_dir: str
    chromium_path: str | None


def configure_logging(env: dict[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")


def parse_positive_int(raw_value: str, field_name: str) -> int:
    """Parse a positive integer from a string."""
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be an integer"
        ) from exc
    if parsed <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, f"{field_name} must be positive")
    return parsed


def parse_positive_float(raw_value: str, field_name: str) -> float:
    """Parse a positive float from a string."""
    try:
        parsed = float(raw_value)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be a number"
        ) from exc
    if parsed <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, f"{field_name} must be positive")
    return parsed


def parse_props(raw_value: str | None) -> dict[str, Any]:
    """Parse the --props JSON object."""
    if raw_value is None:
        return {}
    try:
        payload = json.loads(raw_value)
    except json.JSONDecodeError as exc:
        raise RenderValidationError(
            INVALID_PROPS_CODE, f"props are not valid JSON: {exc.msg}"
        ) from exc
    return normalize_input_props(payload)


def add_source_arguments(parser: argparse.ArgumentParser) -> None:
    source_group = parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument("-u", "--url", default=None)
    source_group.add_argument(
        "--compositions-module",
        default=None,
        help="module:function that registers Python compositions",
    )
    parser.add_argument("-p", "--props", default=None, help="JSON object of input props")
    parser.add_argument("--chromium-path", default=None)
    parser.add_argument("--timeout-seconds", type=float, default=None)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="render_composition.py", add_help=True)
    subparsers = parser.add_subparsers(dest="command", required=True)

    render_parser = subparsers.add_parser("render")
    add_source_arguments(render_parser)
    render_parser.add_argument("-c", "--composition", default=None)
    render_parser.add_argument("-o", "--out", default="out.mp4")
    render_parser.add_argument("-j", "--concurrency", type=int, default=None)
    render_parser.add_argument("--width", type=int, default=None)
    render_parser.add_argument("--height", type=int, default=None)
    render_parser.add_argument("--fps", type=int, default=None)
    render_parser.add_argument(
        "--duration", type=int, default=None, help="duration in frames"
    )
    render_parser.add_argument("--format", default="auto")
    render_parser.add_argument("--public-dir", default=None)
    render_parser.add_argument("--ffmpeg-path", default=None)
    render_parser.add_argument("--frames-dir", default=None)
    render_parser.add_argument("--strict-video-frames", action="store_true")

    compositions_parser = subparsers.add_parser("compositions")
    add_source_arguments(compositions_parser)

    return parser.parse_args(list(argv))


def load_config(args: argparse.Namespace, env: dict[str, str]) -> CliConfig:
    """Load runtime configuration from args and environment."""
    ffmpeg_path = env.get(FFMPEG_PATH_ENV, "").strip() or "ffmpeg"
    if getattr(args, "ffmpeg_path", None):
        ffmpeg_path = args.ffmpeg_path

    concurrency = 1
    raw_concurrency = env.get(CONCURRENCY_ENV, "").strip()
    if raw_concurrency:
        concurrency = parse_positive_int(raw_concurrency, "concurrency")
    if getattr(args, "concurrency", None) is not None:
        concurrency = args.concurrency
    if concurrency <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, "concurrency must be positive")

    timeout_seconds = DEFAULT_TIMEOUT_SECONDS
    raw_timeout = env.get(TIMEOUT_ENV, "").strip()
    if raw_timeout:
        timeout_seconds = parse_positive_float(raw_timeout, "timeout-seconds")
    if args.timeout_seconds is not None:
        timeout_seconds = args.timeout_seconds
    if timeout_seconds <= 0:
        raise RenderValidationError(INVALID_CONFIG_CODE, "timeout-seconds must be positive")

    public_dir = env.get(PUBLIC_DIR_ENV, "").strip() or None
    if getattr(args, "public_dir", None):
        public_dir = args.public_dir
    if public_dir is not None:
        public_dir = os.path.abspath(public_dir)

    tmp_dir = env.get(TMP_DIR_ENV, "").strip() or os.path.join(os.getcwd(), DEFAULT_TMP_DIR)
    chromium_path = args.chromium_path or env.get(CHROMIUM_EXECUTABLE_ENV, "").strip() or None

    return CliConfig(
        ffmpeg_path=ffmpeg_path,
        concurrency=concurrency,
        timeout_seconds=timeout_seconds,
        public_dir=public_dir,
        tmp_dir=tmp_dir,
        chromium_path=chromium_path,
    )


def load_compositions_module(target: str) -> CompositionRegistry:
    """Import module:function and let it register compositions.

    The function receives an empty registry; it may also return a registry
    of its own, which then takes precedence.
    """
    module_name, _, function_name = target.partition(":")
    if not module_name or not function_name:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"compositions module must be module:function: {target!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"cannot import {module_name}: {exc}"
        ) from exc
    register = getattr(module, function_name, None)
    if not callable(register):
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"{target} is not a callable"
        )
    registry = CompositionRegistry()
    returned = register(registry)
    if isinstance(returned, CompositionRegistry):
        return returned
    return registry


def resolve_video_config(
    args: argparse.Namespace,
    config: CliConfig,
    input_props: dict[str, Any],
    registry: CompositionRegistry | None,
) -> tuple[str | None, VideoConfig]:
    """Select the composition and apply size, rate and length overrides."""
    overrides = {
        "width": args.width,
        "height": args.height,
        "fps": args.fps,
        "duration_in_frames": args.duration,
    }
    if registry is None:
        try:
            registry = load_registry(
                args.url, input_props, DISCOVERY_TIMEOUT_SECONDS, config.chromium_path
            )
        except RenderPipelineError as exc:
            if not args.composition:
                raise
            LOGGER.warning("%s: %s", exc.code, str(exc).strip())
            registry = CompositionRegistry()
        if args.composition and args.composition not in registry:
            LOGGER.warning(
                "render_composition.render.composition_not_discovered: %r, "
                "using fallback config",
                args.composition,
            )
            return args.composition, FALLBACK_CONFIG.with_overrides(**overrides)

    composition = select_composition(registry, args.composition)
    return composition.id, composition.config.with_overrides(**overrides)


def log_encode_progress(percent: float, last_logged: list[int]) -> None:
    step = int(percent // PROGRESS_LOG_STEP_PERCENT) * PROGRESS_LOG_STEP_PERCENT
    if step > last_logged[0]:
        last_logged[0] = step
        LOGGER.info("render_composition.encode.progress: %d%%", step)


def run_render(args: argparse.Namespace, config: CliConfig) -> str:
    """Capture frames, resolve asset paths and encode the output."""
    input_props = parse_props(args.props)
    output_format = select_output_format(args.out, args.format)
    registry = None
    if args.compositions_module:
        registry = load_compositions_module(args.compositions_module)

    composition_id, video_config = resolve_video_config(args, config, input_props, registry)
    LOGGER.info(
        "render_composition.render.composition: %s (%dx%d, %dfps, %d frames)",
        composition_id,
        video_config.width,
        video_config.height,
        video_config.fps,
        video_config.duration_in_frames,
    )

    keep_frames = args.frames_dir is not None
    if keep_frames:
        frames_dir = args.frames_dir
    else:
        os.makedirs(config.tmp_dir, exist_ok=True)
        frames_dir = tempfile.mkdtemp(prefix="frames-", dir=config.tmp_dir)

    request = RenderFramesRequest(
        config=video_config,
        output_dir=frames_dir,
        url=args.url,
        composition_id=composition_id,
        input_props=input_props,
        concurrency=config.concurrency,
        public_dir=config.public_dir,
        timeout_seconds=config.timeout_seconds,
        strict_video_frames=args.strict_video_frames,
        ffmpeg_path=config.ffmpeg_path,
        chromium_path=config.chromium_path,
    )
    result = render_frames(request, registry=registry)

    audio_assets = tuple(
        asset.with_src(resolve_asset_path(asset.src, config.public_dir))
        for asset in result.audio_assets
    )
    last_logged = [0]
    encode_output(
        EncodeRequest(
            frames_dir=frames_dir,
            fps=video_config.fps,
            output_file=args.out,
            audio_assets=audio_assets,
            ffmpeg_path=config.ffmpeg_path,
            on_progress=lambda percent: log_encode_progress(percent, last_logged),
        ),
        output_format,
    )
    if not keep_frames:
        shutil.rmtree(frames_dir, ignore_errors=True)
    LOGGER.info(
        "render_composition.render.success: %s in %.1fs", args.out, result.elapsed_seconds
    )
    return args.out


def run_compositions(args: argparse.Namespace, config: CliConfig) -> None:
    """Print the discovered compositions as JSON."""
    input_props = parse_props(args.props)
    if args.compositions_module:
        registry = load_compositions_module(args.compositions_module)
    else:
        registry = load_registry(
            args.url, input_props, config.timeout_seconds, config.chromium_path
        )
    payload = [
        {
            "id": composition.id,
            "width": composition.config.width,
            "height": composition.config.height,
            "fps": composition.config.fps,
            "durationInFrames": composition.config.duration_in_frames,
        }
        for composition in registry.list_compositions()
    ]
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)
    try:
        args = parse_args(list(argv) if argv is not None else sys.argv[1:])
        config = load_config(args, env)
        if config.chromium_path:
            os.environ[CHROMIUM_EXECUTABLE_ENV] = config.chromium_path
        if args.command == "compositions":
            run_compositions(args, config)
        else:
            run_render(args, config)
        return 0
    except RenderValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("render_composition.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
