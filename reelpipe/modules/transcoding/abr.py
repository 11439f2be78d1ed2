"""Adaptive bitrate rendition ladder.

The ladder is fixed and ordered by height. A source is encoded into every
rung it can fill without upscaling; a source smaller than the lowest rung
gets a single rendition at its own size.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class QualityPreset:
    """One rung of the ABR ladder."""
    label: str
    width: int
    height: int
    bitrate: int  # bps, video only


RENDITION_LADDER: tuple[QualityPreset, ...] = (
    QualityPreset("360p", 640, 360, 800_000),
    QualityPreset("480p", 854, 480, 1_200_000),
    QualityPreset("720p", 1280, 720, 2_500_000),
    QualityPreset("1080p", 1920, 1080, 5_000_000),
    QualityPreset("1440p", 2560, 1440, 7_500_000),
    QualityPreset("2160p", 3840, 2160, 15_000_000),
)

MIN_FALLBACK_BITRATE = 200_000

# Smallest even size H.264 with yuv420p can encode.
MIN_SOURCE_DIMENSION = 2


def _even(value: int) -> int:
    """Round down to an even size, never above ``value``."""
    return value - (value % 2)


def fallback_preset(source_width: int, source_height: int) -> QualityPreset:
    """Preset for a source smaller than every ladder rung.

    Bitrate is the lowest rung's bitrate scaled by pixel area.
    """
    width = _even(source_width)
    height = _even(source_height)
    base = RENDITION_LADDER[0]
    scaled = base.bitrate * (width * height) / (base.width * base.height)
    bitrate = max(MIN_FALLBACK_BITRATE, int(round(scaled, -3)))
    return QualityPreset(f"{height}p", width, height, bitrate)


def plan_renditions(source_width: int, source_height: int) -> list[QualityPreset]:
    """Choose the renditions to produce for a source.

    Args:
        source_width: Probed width in pixels
        source_height: Probed height in pixels

    Returns:
        Presets ascending by height, none taller than the source. Never empty.

    Raises:
        ValueError: If either source dimension is below MIN_SOURCE_DIMENSION
    """
    if source_width < MIN_SOURCE_DIMENSION or source_height < MIN_SOURCE_DIMENSION:
        raise ValueError(f"Invalid source dimensions {source_width}x{source_height}")

    planned = [p for p in RENDITION_LADDER if p.height <= source_height]
    if not planned:
        planned = [fallback_preset(source_width, source_height)]
    return sorted(planned, key=lambda p: p.height)
