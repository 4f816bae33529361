"""Core types, configuration and errors for the paint-by-numbers pipeline."""
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple
import numpy as np


# Progress callback: (stage name, percent complete)
ProgressCallback = Callable[[str, float], None]

Point = Tuple[float, float]
RGB = Tuple[int, int, int]
Lab = Tuple[float, float, float]


def _frozen(array: np.ndarray) -> np.ndarray:
    """Mark an array read-only so later stages cannot mutate it in place."""
    array.flags.writeable = False
    return array


@dataclass(frozen=True)
class Zone:
    """A maximal 8-connected set of pixels sharing one palette color.

    Attributes:
        id: Zone id, also the value written into the label map
        color_idx: Palette index of the zone color
        area: Number of pixels
        pixels: Flat pixel indices (y * width + x)
        centroid: Mean pixel position as (x, y)
    """
    id: int
    color_idx: int
    area: int
    pixels: np.ndarray
    centroid: Point

    def __post_init__(self):
        if self.pixels.flags.writeable:
            _frozen(self.pixels)

    def coords(self, width: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (ys, xs) of the zone pixels."""
        return np.divmod(self.pixels, width)

    def bbox(self, width: int) -> Tuple[int, int, int, int]:
        """Return (x0, y0, x1, y1) with exclusive upper bounds."""
        ys, xs = self.coords(width)
        return int(xs.min()), int(ys.min()), int(xs.max()) + 1, int(ys.max()) + 1


@dataclass(frozen=True)
class Contour:
    """Closed polygon owned by one zone, with optional holes.

    Coordinates are (x, y) in pixel-edge space: pixel (x, y) covers
    [x, x + 1] x [y, y + 1]. The first vertex is not repeated at the end.
    """
    zone_id: int
    color_idx: int
    path: np.ndarray
    holes: Tuple[np.ndarray, ...] = ()

    def __post_init__(self):
        if self.path.flags.writeable:
            _frozen(self.path)

    @property
    def num_points(self) -> int:
        return len(self.path) + sum(len(h) for h in self.holes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'zone_id': int(self.zone_id),
            'color_idx': int(self.color_idx),
            'path': np.round(self.path, 3).tolist(),
            'holes': [np.round(h, 3).tolist() for h in self.holes],
        }


@dataclass(frozen=True)
class LegendEntry:
    """One palette color in the legend."""
    number: int
    color_idx: int
    hex: str
    percent: float


@dataclass(frozen=True)
class ZoneGeneration:
    """Immutable snapshot of the zones and label map emitted by one stage."""
    stage: str
    labels: np.ndarray
    zones: Tuple[Zone, ...]

    def __post_init__(self):
        if self.labels.flags.writeable:
            _frozen(self.labels)

    @property
    def zone_count(self) -> int:
        return len(self.zones)


@dataclass(frozen=True)
class ArtisticMergeOptions:
    """Options for the perceptual (Delta E) merge pass."""
    merge_tolerance: float
    min_merge_area: int
    width: int
    height: int
    max_iterations: int = 5

    def __post_init__(self):
        if not 1 <= self.merge_tolerance <= 30:
            raise InputError(
                f"merge_tolerance must be in [1, 30], got {self.merge_tolerance}"
            )
        if self.min_merge_area < 0:
            raise InputError(f"min_merge_area must be >= 0, got {self.min_merge_area}")
        if self.max_iterations < 1:
            raise InputError(f"max_iterations must be >= 1, got {self.max_iterations}")


@dataclass(frozen=True)
class ArtisticMergeStats:
    """Bookkeeping for one artistic merge run."""
    iterations: int
    elapsed_ms: float
    before_count: int
    after_count: int
    merged_count: int
    average_delta_e: float
    merge_tolerance: float
    min_merge_area: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iterations': self.iterations,
            'elapsed_ms': round(self.elapsed_ms, 3),
            'before_count': self.before_count,
            'after_count': self.after_count,
            'merged_count': self.merged_count,
            'average_delta_e': round(self.average_delta_e, 4),
            'merge_tolerance': self.merge_tolerance,
            'min_merge_area': self.min_merge_area,
        }


@dataclass
class IngestResult:
    """Decoded, normalized RGB image ready for quantization."""
    image: np.ndarray  # (H, W, 3) uint8
    width: int
    height: int
    original_size: Tuple[int, int]  # (width, height) before downscaling
    has_alpha: bool = False
    source: str = ""

    @property
    def was_resized(self) -> bool:
        return self.original_size != (self.width, self.height)


@dataclass
class PBNConfig:
    """Configuration for the paint-by-numbers pipeline."""
    # Ingestion
    max_dimension: int = 1200
    max_file_bytes: int = 20 * 1024 * 1024
    max_pixels: int = 4096 * 4096

    # Quantization
    sample_step: int = 4
    min_samples: int = 1024
    kmeans_iterations: int = 10
    random_state: int = 42

    # Zone labeling
    max_fill_iterations: int = 1_000_000
    max_fill_stack: int = 500_000

    # Smoothing
    smoothing_radius: int = 4

    # Artistic merge
    artistic_max_iterations: int = 5

    # Contours
    max_rings_per_zone: int = 256
    max_ring_points: int = 20_000
    union_max_group: int = 100

    # Labels and rendering
    min_label_area: int = 20
    label_search_radius: int = 50
    svg_max_contours: int = 1000

    # Preview effect (none, watercolor, brush, oil, pencil) and its 0-100 strength
    preview_effect: Optional[str] = None
    effect_intensity: float = 50.0

    # SVG export
    svg_group_by_color: bool = False
    svg_include_metadata: bool = False
    svg_padding: float = 0.0

    # Timeouts (seconds)
    pipeline_timeout: float = 30.0
    worker_timeout: float = 35.0
    worker_idle_timeout: float = 60.0

    # Caches
    lab_cache_size: int = 1000
    lab_cache_age: float = 600.0
    result_cache_size: int = 10
    result_cache_age: float = 300.0

    # Keep every stage's zone snapshot on the result
    keep_generations: bool = False


@dataclass
class ProcessedResult:
    """Everything one pipeline run produces."""
    colorized: np.ndarray
    contours: np.ndarray
    numbered: np.ndarray
    preview: np.ndarray
    palette: np.ndarray
    zones: List[Zone]
    contour_paths: List[Contour]
    label_positions: Dict[int, Point]
    svg: str
    legend: List[LegendEntry]
    width: int
    height: int
    labels: Optional[np.ndarray] = None
    artistic_stats: Optional[ArtisticMergeStats] = None
    warnings: Tuple[str, ...] = ()
    timings: Dict[str, float] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    generations: Dict[str, ZoneGeneration] = field(default_factory=dict)

    def copy(self) -> 'ProcessedResult':
        """
        Copy with new containers. Read-only rasters and the frozen zone,
        contour and legend records are shared.
        """
        return replace(
            self,
            zones=list(self.zones),
            contour_paths=list(self.contour_paths),
            label_positions=dict(self.label_positions),
            legend=list(self.legend),
            warnings=tuple(self.warnings),
            timings=dict(self.timings),
            params=dict(self.params),
            generations=dict(self.generations),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable project snapshot without raster buffers."""
        from pbnkit.color_space import rgb_to_hex

        return {
            'width': self.width,
            'height': self.height,
            'params': dict(self.params),
            'palette': [rgb_to_hex(c) for c in self.palette],
            'legend': [
                {'number': e.number, 'color': e.hex, 'percent': e.percent}
                for e in self.legend
            ],
            'zones': [
                {
                    'id': z.id,
                    'color_idx': z.color_idx,
                    'area': z.area,
                    'label': [round(v, 2) for v in self.label_positions.get(z.id, z.centroid)],
                }
                for z in self.zones
            ],
            'contours': [c.to_dict() for c in self.contour_paths],
            'artistic_stats': self.artistic_stats.to_dict() if self.artistic_stats else None,
            'warnings': list(self.warnings),
            'timings': {k: round(v, 4) for k, v in self.timings.items()},
        }


class PaintByNumbersError(Exception):
    """Base exception for pipeline errors."""
    pass


class InputError(PaintByNumbersError, ValueError):
    """Invalid image or parameters."""
    pass


class ProcessingTimeoutError(PaintByNumbersError, TimeoutError):
    """Processing exceeded its deadline."""
    pass


class ProtocolError(PaintByNumbersError):
    """Worker violated the message protocol."""
    pass


class WorkerError(PaintByNumbersError):
    """Worker reported a processing failure."""
    pass


class WorkerBusyError(PaintByNumbersError):
    """A run is already in flight on this worker host."""
    pass


class ResourceLimitExceeded(RuntimeWarning):
    """A safety cap was hit and output was truncated or coarsened."""
    pass


class GeometryWarning(RuntimeWarning):
    """A geometry operation failed and a fallback was used."""
    pass


TIMEOUT_GUIDANCE = "try a smaller image or fewer colors"


def emit_warning(logger, message: str, category=RuntimeWarning) -> None:
    """Log a recovered failure and issue it as a Python warning."""
    logger.warning(message)
    warnings.warn(message, category, stacklevel=3)
