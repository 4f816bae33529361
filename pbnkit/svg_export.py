"""SVG export of zone contours."""
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence
from xml.sax.saxutils import escape

import numpy as np

from pbnkit.types import Contour

PBN_NAMESPACE = "http://pbn.app/ns"
DC_NAMESPACE = "http://purl.org/dc/elements/1.1/"
RDF_NAMESPACE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
FALLBACK_FILL = (128, 128, 128)


def format_color(rgb: Sequence[int]) -> str:
    """
    Format a 0-255 RGB color as a hex string.

    Uses #RGB shorthand when possible.
    """
    r, g, b = [int(min(255, max(0, c))) for c in rgb]

    if (r % 17 == 0) and (g % 17 == 0) and (b % 17 == 0):
        return f"#{r//17:x}{g//17:x}{b//17:x}"
    return f"#{r:02x}{g:02x}{b:02x}"


def format_number(x: float, precision: int) -> str:
    """Format number with given precision, dropping trailing zeros."""
    formatted = f"{x:.{precision}f}"
    if '.' in formatted:
        formatted = formatted.rstrip('0').rstrip('.')
    if formatted == '-0':
        formatted = '0'
    return formatted


def ring_to_path_data(ring: np.ndarray, precision: int = 2) -> str:
    """Closed subpath 'M x,y L ... Z' for one ring."""
    fmt = lambda v: format_number(v, precision)
    points = [f"{fmt(x)},{fmt(y)}" for x, y in ring]
    return f"M{points[0]} L" + ' '.join(points[1:]) + " Z"


def contour_to_svg(
    contour: Contour,
    fill_color: Optional[Sequence[int]],
    precision: int = 2
) -> str:
    """
    Convert a Contour to an SVG path element.

    Holes are emitted as extra subpaths and cut out by the even-odd rule.
    With fill_color None the path inherits its fill from the enclosing group.
    """
    if len(contour.path) < 3:
        return ""

    subpaths = [ring_to_path_data(contour.path, precision)]
    subpaths.extend(ring_to_path_data(h, precision) for h in contour.holes if len(h) >= 3)

    fill = f' fill="{format_color(fill_color)}"' if fill_color is not None else ''
    return (
        f'<path d="{" ".join(subpaths)}"{fill} '
        f'fill-rule="evenodd" data-zone="{contour.zone_id}" '
        f'data-color="{contour.color_idx + 1}"/>'
    )


def placeholder_svg(width: int, height: int, count: int, limit: int) -> str:
    """Lightweight document used when there are too many contours to draw."""
    return f'''<?xml version="1.0" encoding="UTF-8"?>
<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 {width} {height}" width="{width}" height="{height}">
  <rect width="100%" height="100%" fill="#f0f0f0"/>
  <text x="50%" y="50%" text-anchor="middle" font-family="sans-serif" font-size="16" fill="#555">Too many regions to preview ({count} &gt; {limit}); reduce colors or increase minimum region size</text>
</svg>'''


def metadata_block(
    contours: List[Contour],
    palette: np.ndarray,
    width: int,
    height: int,
    extra: Optional[Dict[str, Any]] = None
) -> str:
    """
    RDF metadata element describing the template.

    Records zone and color counts and the image size; extra entries
    (e.g. artistic merge statistics) are appended as further pbn: fields.
    """
    fields = {
        'zones': len({c.zone_id for c in contours}),
        'colors': len(palette),
        'width': width,
        'height': height,
    }
    fields.update(extra or {})

    lines = [
        '<metadata>',
        f'  <rdf:RDF xmlns:rdf="{RDF_NAMESPACE}">',
        '    <rdf:Description>',
        f'      <dc:title xmlns:dc="{DC_NAMESPACE}">Paint by Numbers</dc:title>',
        f'      <dc:format xmlns:dc="{DC_NAMESPACE}">image/svg+xml</dc:format>',
        f'      <dc:creator xmlns:dc="{DC_NAMESPACE}">pbnkit</dc:creator>',
    ]
    for name, value in fields.items():
        lines.append(f'      <pbn:{name} xmlns:pbn="{PBN_NAMESPACE}">{escape(str(value))}</pbn:{name}>')
    lines.extend(['    </rdf:Description>', '  </rdf:RDF>', '</metadata>'])
    return '\n  '.join(lines)


def _fill_for(palette: np.ndarray, color_idx: int) -> Sequence[int]:
    return palette[color_idx] if color_idx < len(palette) else FALLBACK_FILL


def _color_groups(contours: List[Contour], palette: np.ndarray, precision: int) -> List[str]:
    """One <g> per palette color holding that color's paths, in palette order."""
    groups: Dict[int, List[str]] = defaultdict(list)
    for contour in contours:
        element = contour_to_svg(contour, None, precision)
        if element:
            groups[contour.color_idx].append(element)

    elements = []
    for color_idx in sorted(groups):
        fill = format_color(_fill_for(palette, color_idx))
        body = '\n    '.join(groups[color_idx])
        elements.append(f'<g id="color-{color_idx + 1}" fill="{fill}">\n    {body}\n  </g>')
    return elements


def generate_svg(
    contours: List[Contour],
    palette: np.ndarray,
    width: int,
    height: int,
    max_contours: int = 1000,
    precision: int = 2,
    group_by_color: bool = False,
    include_metadata: bool = False,
    padding: float = 0,
    metadata: Optional[Dict[str, Any]] = None
) -> str:
    """
    Generate an SVG document with one filled path per contour.

    Args:
        contours: Contours to draw
        palette: (N, 3) uint8 palette used for fills
        width: Image width
        height: Image height
        max_contours: Above this many contours a placeholder is returned
        precision: Decimal precision of coordinates
        group_by_color: Wrap paths in one <g id="color-N"> per palette color
            carrying the fill, instead of a fill on every path
        include_metadata: Add an RDF <metadata> block
        padding: Margin added around the image in the viewBox
        metadata: Extra pbn: fields for the metadata block

    Returns:
        Complete SVG string
    """
    if len(contours) > max_contours:
        return placeholder_svg(width, height, len(contours), max_contours)

    elements = []
    if include_metadata:
        elements.append(metadata_block(contours, palette, width, height, metadata))

    if group_by_color:
        elements.extend(_color_groups(contours, palette, precision))
    else:
        for contour in contours:
            element = contour_to_svg(contour, _fill_for(palette, contour.color_idx), precision)
            if element:
                elements.append(element)

    svg_content = '\n  '.join(elements)
    view_box = ' '.join(
        format_number(v, precision)
        for v in (-padding, -padding, width + 2 * padding, height + 2 * padding)
    )

    svg = f'''<?xml version="1.0" encoding="UTF-8"?>
<svg xmlns="http://www.w3.org/2000/svg" viewBox="{view_box}" width="{width}" height="{height}">
  {svg_content}
</svg>'''

    return svg


def save_svg(svg_string: str, output_path: str) -> None:
    """Save SVG string to file."""
    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(svg_string)
