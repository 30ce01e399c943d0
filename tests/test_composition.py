"""Tests for configs, registry, partitioning and audio dedup."""

from __future__ import annotations

import pytest

from domain.composition import (
    INVALID_ASSET_CODE,
    INVALID_CONCURRENCY_CODE,
    INVALID_CONFIG_CODE,
    INVALID_PROPS_CODE,
    UNKNOWN_COMPOSITION_CODE,
    AudioAsset,
    Composition,
    CompositionRegistry,
    RenderValidationError,
    VideoConfig,
    dedupe_audio_assets,
    frame_file_name,
    normalize_input_props,
    partition_frames,
)

CONFIG = VideoConfig(width=640, height=360, fps=30, duration_in_frames=90)


def test_partition_matches_reference_split() -> None:
    ranges = partition_frames(100, 3)
    assert [(r.worker_id, r.start_frame, r.end_frame) for r in ranges] == [
        (0, 0, 33),
        (1, 34, 67),
        (2, 68, 99),
    ]
    assert [r.frame_count for r in ranges] == [34, 34, 32]


@pytest.mark.parametrize(
    "duration, concurrency",
    [(1, 1), (10, 1), (10, 3), (10, 4), (5, 8), (97, 7), (60, 2)],
)
def test_partition_covers_every_frame_once(duration: int, concurrency: int) -> None:
    frames = [frame for r in partition_frames(duration, concurrency) for frame in r.frames()]
    assert frames == list(range(duration))


def test_partition_rejects_invalid_concurrency() -> None:
    with pytest.raises(RenderValidationError) as excinfo:
        partition_frames(10, 0)
    assert excinfo.value.code == INVALID_CONCURRENCY_CODE


def test_audio_dedup_keeps_first_seen() -> None:
    first = AudioAsset(src="/a.wav", start_frame=0)
    duplicate = AudioAsset(src="/a.wav", start_frame=0)
    louder = AudioAsset(src="/a.wav", start_frame=0, volume=0.5)
    unique = dedupe_audio_assets([first, duplicate, louder])
    assert unique == (first, louder)
    assert unique[0] is first


def test_registry_overwrites_by_id() -> None:
    registry = CompositionRegistry()
    registry.register(Composition(id="main", config=CONFIG))
    replacement = registry.register(
        Composition(id="main", config=CONFIG.with_overrides(fps=60))
    )
    assert len(registry) == 1
    assert "main" in registry
    assert registry.require("main") is replacement
    assert registry.get("missing") is None
    with pytest.raises(RenderValidationError) as excinfo:
        registry.require("missing")
    assert excinfo.value.code == UNKNOWN_COMPOSITION_CODE


def test_video_config_validation() -> None:
    for kwargs in (
        {"width": 0, "height": 10, "fps": 30, "duration_in_frames": 1},
        {"width": 10, "height": 10, "fps": -1, "duration_in_frames": 1},
        {"width": 10, "height": 10, "fps": 30, "duration_in_frames": 0},
        {"width": True, "height": 10, "fps": 30, "duration_in_frames": 1},
    ):
        with pytest.raises(RenderValidationError) as excinfo:
            VideoConfig(**kwargs)
        assert excinfo.value.code == INVALID_CONFIG_CODE


def test_video_config_from_mapping() -> None:
    config = VideoConfig.from_mapping(
        {"width": 1920, "height": 1080, "fps": 30, "durationInFrames": 120}
    )
    assert config == VideoConfig(1920, 1080, 30, 120)
    assert config.duration_seconds == 4.0
    with pytest.raises(RenderValidationError):
        VideoConfig.from_mapping({"width": 10})


def test_audio_asset_validation() -> None:
    with pytest.raises(RenderValidationError) as excinfo:
        AudioAsset(src="/a.wav", volume=1.5)
    assert excinfo.value.code == INVALID_ASSET_CODE
    with pytest.raises(RenderValidationError):
        AudioAsset(src="")
    asset = AudioAsset.from_mapping({"src": "/a.wav", "startFrame": 30, "startFrom": 15})
    assert (asset.start_frame, asset.start_from, asset.volume) == (30, 15, 1.0)


def test_frame_file_name() -> None:
    assert frame_file_name(0) == "frame-00000.png"
    assert frame_file_name(1234) == "frame-01234.png"


def test_normalize_input_props() -> None:
    assert normalize_input_props(None) == {}
    assert normalize_input_props({"title": "x"}) == {"title": "x"}
    with pytest.raises(RenderValidationError) as excinfo:
        normalize_input_props([1, 2])
    assert excinfo.value.code == INVALID_PROPS_CODE
