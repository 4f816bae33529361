"""Paint-by-numbers pipeline: image in, palette, zones, contours and renders out."""
import logging
import time
import warnings
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from pbnkit.artistic_merger import artistic_merge
from pbnkit.boundary_smoother import smooth_labels
from pbnkit.cache import ProcessingCache
from pbnkit.color_space import ColorSpace
from pbnkit.contour_tracer import trace_contours
from pbnkit.effects import validate_effect
from pbnkit.label_placer import place_labels, seed_label_positions
from pbnkit.lru_cache import LRUCache
from pbnkit.quantization import PaletteQuantizer
from pbnkit.raster_ingest import ImageSource, load_image
from pbnkit.region_merger import merge_small_zones
from pbnkit.renderer import render_all
from pbnkit.types import (
    ArtisticMergeOptions,
    ArtisticMergeStats,
    GeometryWarning,
    InputError,
    PBNConfig,
    ProcessedResult,
    ProcessingTimeoutError,
    ProgressCallback,
    ResourceLimitExceeded,
    TIMEOUT_GUIDANCE,
    ZoneGeneration,
)
from pbnkit.zone_labeler import build_zones, label_zones, zone_color_lookup

logger = logging.getLogger(__name__)

STAGES = ('decode', 'quantize', 'label', 'merge', 'smooth', 'artistic', 'contours', 'labels', 'render')

# Recommended UI ranges; the pipeline accepts wider values
NUM_COLORS_RANGE = (5, 40)
MIN_REGION_RANGE = (10, 500)
SMOOTHNESS_RANGE = (0, 100)


class Deadline:
    """Wall-clock budget checked between and inside stages."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started

    def check(self, stage: str) -> None:
        if self.seconds is not None and self.elapsed > self.seconds:
            raise ProcessingTimeoutError(
                f"Processing exceeded {self.seconds:g}s during '{stage}' stage; {TIMEOUT_GUIDANCE}"
            )


def validate_parameters(
    num_colors: int,
    min_region_size: int,
    smoothness: int,
    merge_tolerance: Optional[float] = None
) -> None:
    """Raise InputError for parameters the pipeline cannot run with."""
    if not isinstance(num_colors, (int, np.integer)) or num_colors < 1:
        raise InputError(f"num_colors must be a positive integer, got {num_colors!r}")
    if min_region_size < 0:
        raise InputError(f"min_region_size must be >= 0, got {min_region_size}")
    if not SMOOTHNESS_RANGE[0] <= smoothness <= SMOOTHNESS_RANGE[1]:
        raise InputError(
            f"smoothness must be in [{SMOOTHNESS_RANGE[0]}, {SMOOTHNESS_RANGE[1]}], got {smoothness}"
        )
    if merge_tolerance is not None and not 1 <= merge_tolerance <= 30:
        raise InputError(f"merge_tolerance must be in [1, 30], got {merge_tolerance}")


class PaintByNumbersPipeline:
    """
    Runs every stage in order on one image.

    Caches are injected so separate pipelines (and test cases) never share
    state unless the caller hands them the same objects.
    """

    def __init__(
        self,
        config: Optional[PBNConfig] = None,
        cache: Optional[ProcessingCache] = None,
        color_space: Optional[ColorSpace] = None
    ):
        """
        Args:
            config: Configuration (uses defaults if None)
            cache: Whole-result cache; None disables result caching
            color_space: Lab conversion cache (a fresh one if None)
        """
        self.config = config or PBNConfig()
        self.cache = cache
        self.color_space = color_space or ColorSpace(
            LRUCache(self.config.lab_cache_size, self.config.lab_cache_age)
        )

    def process(
        self,
        image: ImageSource,
        num_colors: int,
        min_region_size: int,
        smoothness: int,
        on_progress: Optional[ProgressCallback] = None,
        merge_tolerance: Optional[float] = None,
        min_merge_area: Optional[int] = None
    ) -> ProcessedResult:
        """
        Process an image through the paint-by-numbers pipeline.

        Args:
            image: Encoded image bytes, a file path or an RGB(A) array
            num_colors: Palette size
            min_region_size: Zones smaller than this (pixels) are merged away
            smoothness: Number of boundary smoothing rounds (0-100)
            on_progress: Called as (stage, percent) once per stage
            merge_tolerance: Enables the artistic merge pass with this Delta E
            min_merge_area: Area below which the artistic pass always merges
                (defaults to min_region_size)

        Returns:
            ProcessedResult

        Raises:
            InputError: If the image or parameters are invalid
            ProcessingTimeoutError: If the run exceeds config.pipeline_timeout
        """
        validate_parameters(num_colors, min_region_size, smoothness, merge_tolerance)
        validate_effect(self.config.preview_effect, self.config.effect_intensity)

        deadline = Deadline(self.config.pipeline_timeout)
        artistic = merge_tolerance is not None
        stages = [s for s in STAGES if artistic or s != 'artistic']
        progress = _ProgressReporter(stages, on_progress)
        timings: Dict[str, float] = {}

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always', ResourceLimitExceeded)
            warnings.simplefilter('always', GeometryWarning)

            stage_start = time.perf_counter()
            ingested = load_image(image, self.config)
            timings['decode'] = time.perf_counter() - stage_start
            logger.info(f"Step 1/{len(stages)}: decoded {ingested.width}x{ingested.height}")
            progress('decode')

            params = {
                'num_colors': int(num_colors),
                'min_region_size': int(min_region_size),
                'smoothness': int(smoothness),
            }
            if artistic:
                params['merge_tolerance'] = float(merge_tolerance)
                params['min_merge_area'] = int(
                    min_merge_area if min_merge_area is not None else min_region_size
                )

            cache_key = None
            if self.cache is not None:
                extra = (params['merge_tolerance'], params['min_merge_area']) if artistic else ()
                cache_key = self.cache.make_key(
                    ingested.image, num_colors, min_region_size, smoothness, *extra
                )
                cached = self.cache.get(cache_key)
                if cached is not None:
                    for stage in stages[1:]:
                        progress(stage)
                    return cached.copy()

            result = self._run_stages(ingested.image, params, deadline, progress, timings)

        result.warnings = tuple(
            str(w.message) for w in caught
            if issubclass(w.category, (ResourceLimitExceeded, GeometryWarning))
        )
        for w in caught:
            if not issubclass(w.category, (ResourceLimitExceeded, GeometryWarning)):
                warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

        if cache_key is not None:
            self.cache.put(cache_key, result.copy())

        logger.info(
            f"Completed in {deadline.elapsed:.2f}s: {len(result.zones)} zones, "
            f"{len(result.contour_paths)} contours"
        )
        return result

    def _svg_options(self, artistic_stats: Optional[ArtisticMergeStats]) -> Dict[str, Any]:
        config = self.config
        metadata = {}
        if artistic_stats is not None:
            metadata['merged-zones'] = artistic_stats.merged_count
            metadata['avg-delta-e'] = f"{artistic_stats.average_delta_e:.2f}"
        return {
            'group_by_color': config.svg_group_by_color,
            'include_metadata': config.svg_include_metadata,
            'padding': config.svg_padding,
            'metadata': metadata,
        }

    def _run_stages(
        self,
        image: np.ndarray,
        params: Dict[str, Any],
        deadline: Deadline,
        progress: "_ProgressReporter",
        timings: Dict[str, float]
    ) -> ProcessedResult:
        config = self.config
        height, width = image.shape[:2]
        total = len(progress.stages)
        generations: List[ZoneGeneration] = []

        def timed(stage: str, func, *args, **kwargs):
            deadline.check(stage)
            start = time.perf_counter()
            value = func(*args, **kwargs)
            timings[stage] = time.perf_counter() - start
            step = progress.stages.index(stage) + 1
            logger.info(f"Step {step}/{total}: {stage} done in {timings[stage]:.3f}s")
            return value

        def snapshot(stage: str, labels: np.ndarray, zones) -> None:
            generations.append(ZoneGeneration(stage=stage, labels=labels, zones=tuple(zones)))

        # Quantize
        quantizer = PaletteQuantizer(
            params['num_colors'],
            iterations=config.kmeans_iterations,
            sample_step=config.sample_step,
            min_samples=config.min_samples,
            random_state=config.random_state
        )
        color_map, palette = timed('quantize', quantizer.quantize, image)
        palette.flags.writeable = False
        progress('quantize')

        # Label
        labels, zones = timed(
            'label', label_zones, color_map,
            max_iterations=config.max_fill_iterations,
            max_stack=config.max_fill_stack,
            deadline=deadline
        )
        snapshot('label', labels, zones)
        progress('label')

        # Size-based merge
        labels, zones = timed(
            'merge', merge_small_zones, zones, labels, palette,
            params['min_region_size'], self.color_space
        )
        snapshot('merge', labels, zones)
        progress('merge')

        # Smooth, then rebuild zones from the smoothed map
        colors = zone_color_lookup(zones)
        labels = timed(
            'smooth', smooth_labels, labels, params['smoothness'],
            radius=config.smoothing_radius, deadline=deadline
        )
        zones = build_zones(labels, colors, len(palette))
        snapshot('smooth', labels, zones)
        progress('smooth')

        artistic_stats = None
        if 'merge_tolerance' in params:
            options = ArtisticMergeOptions(
                merge_tolerance=params['merge_tolerance'],
                min_merge_area=params['min_merge_area'],
                width=width,
                height=height,
                max_iterations=config.artistic_max_iterations
            )
            merged = timed('artistic', artistic_merge, zones, labels, palette, options, self.color_space)
            labels, zones, artistic_stats = merged.labels, merged.zones, merged.stats
            snapshot('artistic', labels, zones)
            progress('artistic')

        seeds = seed_label_positions(zones, width, height)

        contours = timed(
            'contours', trace_contours, zones, width, height,
            max_rings_per_zone=config.max_rings_per_zone,
            max_ring_points=config.max_ring_points,
            union_max_group=config.union_max_group,
            deadline=deadline
        )
        progress('contours')

        positions = timed(
            'labels', place_labels, zones, contours, labels,
            max_radius=config.label_search_radius, seeds=seeds, deadline=deadline
        )
        progress('labels')

        rendered = timed(
            'render', render_all, labels, zones, palette, contours, positions,
            min_label_area=config.min_label_area,
            svg_max_contours=config.svg_max_contours,
            preview_effect=config.preview_effect,
            effect_intensity=config.effect_intensity,
            svg_options=self._svg_options(artistic_stats)
        )
        progress('render')

        final = generations[-1]
        for raster in (rendered.colorized, rendered.contours, rendered.numbered, rendered.preview):
            raster.flags.writeable = False

        return ProcessedResult(
            colorized=rendered.colorized,
            contours=rendered.contours,
            numbered=rendered.numbered,
            preview=rendered.preview,
            palette=palette,
            zones=list(final.zones),
            contour_paths=contours,
            label_positions=positions,
            svg=rendered.svg,
            legend=rendered.legend,
            width=width,
            height=height,
            labels=final.labels,
            artistic_stats=artistic_stats,
            timings=dict(timings),
            params=dict(params),
            generations={g.stage: g for g in generations} if config.keep_generations else {}
        )


class _ProgressReporter:
    """Fires the progress callback once per stage with cumulative percent."""

    def __init__(self, stages: List[str], callback: Optional[ProgressCallback]):
        self.stages = stages
        self.callback = callback
        self.reported: List[str] = []

    def __call__(self, stage: str) -> None:
        if stage in self.reported:
            return
        self.reported.append(stage)
        if self.callback is not None:
            percent = round(100.0 * (self.stages.index(stage) + 1) / len(self.stages), 1)
            self.callback(stage, percent)


def process_image(
    image: ImageSource,
    num_colors: int,
    min_region_size: int,
    smoothness: int,
    on_progress: Optional[ProgressCallback] = None,
    *,
    merge_tolerance: Optional[float] = None,
    min_merge_area: Optional[int] = None,
    config: Optional[PBNConfig] = None,
    cache: Optional[ProcessingCache] = None,
    color_space: Optional[ColorSpace] = None
) -> ProcessedResult:
    """
    Convenience function to run the pipeline once.

    Args:
        image: Encoded image bytes, a file path or an RGB(A) array
        num_colors: Palette size (UI range 5-40)
        min_region_size: Minimum zone area in pixels (UI range 10-500)
        smoothness: Boundary smoothing rounds (0-100)
        on_progress: Optional (stage, percent) callback
        merge_tolerance: Enables the artistic merge pass (1-30)
        min_merge_area: Forced-merge area for the artistic pass
        config: Pipeline configuration
        cache: Optional whole-result cache
        color_space: Optional Lab conversion cache

    Returns:
        ProcessedResult
    """
    pipeline = PaintByNumbersPipeline(config=config, cache=cache, color_space=color_space)
    return pipeline.process(
        image,
        num_colors,
        min_region_size,
        smoothness,
        on_progress=on_progress,
        merge_tolerance=merge_tolerance,
        min_merge_area=min_merge_area
    )
