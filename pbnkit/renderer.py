"""Raster outputs: colorized image, contour lines, numbered template, preview and legend."""
import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from pbnkit.color_space import rgb_to_hex
from pbnkit.effects import apply_effect
from pbnkit.svg_export import generate_svg
from pbnkit.types import Contour, LegendEntry, Point, Zone
from pbnkit.zone_labeler import color_index_map

logger = logging.getLogger(__name__)

MIN_FONT_SIZE = 8
MAX_FONT_SIZE = 28
FONT_SCALE = 0.25
# Share of white mixed into preview colors
PREVIEW_LIGHTEN = 0.45


@dataclass
class RenderResult:
    colorized: np.ndarray
    contours: np.ndarray
    numbered: np.ndarray
    preview: np.ndarray
    svg: str
    legend: List[LegendEntry]


def render_colorized(labels: np.ndarray, zones: Sequence[Zone], palette: np.ndarray) -> np.ndarray:
    """Paint each pixel with its zone's palette color."""
    return palette[color_index_map(labels, zones)].astype(np.uint8)


def contour_mask(labels: np.ndarray) -> np.ndarray:
    """True where a pixel's label differs from a 4-neighbor, or on the image edge."""
    mask = np.zeros(labels.shape, dtype=bool)
    horizontal = labels[:, 1:] != labels[:, :-1]
    vertical = labels[1:, :] != labels[:-1, :]
    mask[:, 1:] |= horizontal
    mask[:, :-1] |= horizontal
    mask[1:, :] |= vertical
    mask[:-1, :] |= vertical
    mask[0, :] = mask[-1, :] = True
    mask[:, 0] = mask[:, -1] = True
    return mask


def render_contours(labels: np.ndarray) -> np.ndarray:
    """Black 1px boundaries on white."""
    out = np.full(labels.shape + (3,), 255, dtype=np.uint8)
    out[contour_mask(labels)] = 0
    return out


def font_size_for_area(area: int) -> int:
    return int(min(MAX_FONT_SIZE, max(MIN_FONT_SIZE, round(math.sqrt(area) * FONT_SCALE))))


@lru_cache(maxsize=32)
def _font(size: int) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def draw_numbers(
    canvas: Image.Image,
    zones: Sequence[Zone],
    positions: Dict[int, Point],
    min_label_area: int = 20,
    box_fill=(255, 255, 255),
    text_fill=(0, 0, 0)
) -> int:
    """
    Draw each zone's palette number (color index + 1) at its label point.

    Numbers sit on a padded background box. Zones smaller than
    min_label_area are skipped.

    Returns:
        Number of labels drawn
    """
    draw = ImageDraw.Draw(canvas)
    drawn = 0
    for zone in zones:
        if zone.area < min_label_area or zone.id not in positions:
            continue
        x, y = positions[zone.id]
        text = str(zone.color_idx + 1)
        font = _font(font_size_for_area(zone.area))

        left, top, right, bottom = draw.textbbox((x, y), text, font=font, anchor='mm')
        draw.rectangle((left - 1, top - 1, right + 1, bottom + 1), fill=box_fill)
        draw.text((x, y), text, fill=text_fill, font=font, anchor='mm')
        drawn += 1
    return drawn


def render_numbered(
    labels: np.ndarray,
    zones: Sequence[Zone],
    positions: Dict[int, Point],
    min_label_area: int = 20
) -> np.ndarray:
    """White template with contour lines and palette numbers."""
    canvas = Image.fromarray(render_contours(labels))
    drawn = draw_numbers(canvas, zones, positions, min_label_area)
    logger.debug(f"Drew {drawn} numbers")
    return np.array(canvas, dtype=np.uint8)


def render_preview(
    labels: np.ndarray,
    zones: Sequence[Zone],
    palette: np.ndarray,
    positions: Dict[int, Point],
    min_label_area: int = 20,
    effect: Optional[str] = None,
    effect_intensity: float = 50.0
) -> np.ndarray:
    """
    Lightened colors with contour lines and numbers on top.

    A painterly effect, when given, is applied to the colors before the
    lines and numbers are drawn so they stay legible.
    """
    colorized = render_colorized(labels, zones, palette).astype(np.float64)
    lightened = colorized * (1 - PREVIEW_LIGHTEN) + 255.0 * PREVIEW_LIGHTEN
    out = np.round(lightened).astype(np.uint8)
    out = apply_effect(out, effect, effect_intensity)
    out[contour_mask(labels)] = (60, 60, 60)

    canvas = Image.fromarray(out)
    draw_numbers(canvas, zones, positions, min_label_area, box_fill=(255, 255, 255))
    return np.array(canvas, dtype=np.uint8)


def build_legend(zones: Sequence[Zone], palette: np.ndarray, total_pixels: int) -> List[LegendEntry]:
    """
    Percentage of the image covered by each palette color in use,
    sorted by coverage (descending).
    """
    areas: Dict[int, int] = {}
    for zone in zones:
        areas[zone.color_idx] = areas.get(zone.color_idx, 0) + zone.area

    entries = [
        LegendEntry(
            number=color_idx + 1,
            color_idx=color_idx,
            hex=rgb_to_hex(palette[color_idx]),
            percent=round(100.0 * area / total_pixels, 2) if total_pixels else 0.0
        )
        for color_idx, area in areas.items()
    ]
    entries.sort(key=lambda e: (-e.percent, e.number))
    return entries


def render_all(
    labels: np.ndarray,
    zones: Sequence[Zone],
    palette: np.ndarray,
    contours: List[Contour],
    positions: Dict[int, Point],
    min_label_area: int = 20,
    svg_max_contours: int = 1000,
    preview_effect: Optional[str] = None,
    effect_intensity: float = 50.0,
    svg_options: Optional[Dict[str, Any]] = None
) -> RenderResult:
    """
    Produce every raster and vector output for one result.

    svg_options are passed through to generate_svg (group_by_color,
    include_metadata, padding, metadata).
    """
    h, w = labels.shape
    return RenderResult(
        colorized=render_colorized(labels, zones, palette),
        contours=render_contours(labels),
        numbered=render_numbered(labels, zones, positions, min_label_area),
        preview=render_preview(
            labels, zones, palette, positions, min_label_area,
            effect=preview_effect, effect_intensity=effect_intensity
        ),
        svg=generate_svg(
            contours, palette, w, h, max_contours=svg_max_contours, **(svg_options or {})
        ),
        legend=build_legend(zones, palette, h * w)
    )


def save_png(image: np.ndarray, path) -> None:
    Image.fromarray(image).save(path)
