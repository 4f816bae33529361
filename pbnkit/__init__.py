"""Paint-by-numbers template generation."""
from pbnkit.types import (
    Zone,
    Contour,
    LegendEntry,
    ArtisticMergeOptions,
    ArtisticMergeStats,
    PBNConfig,
    ProcessedResult,
    PaintByNumbersError,
    InputError,
    ProcessingTimeoutError,
    ProtocolError,
    WorkerError,
    WorkerBusyError,
    ResourceLimitExceeded,
    GeometryWarning,
)
from pbnkit.artistic_merger import artistic_merge
from pbnkit.pipeline import PaintByNumbersPipeline, process_image

__version__ = "0.1.0"

__all__ = [
    "Zone",
    "Contour",
    "LegendEntry",
    "ArtisticMergeOptions",
    "ArtisticMergeStats",
    "PBNConfig",
    "ProcessedResult",
    "PaintByNumbersError",
    "InputError",
    "ProcessingTimeoutError",
    "ProtocolError",
    "WorkerError",
    "WorkerBusyError",
    "ResourceLimitExceeded",
    "GeometryWarning",
    "artistic_merge",
    "PaintByNumbersPipeline",
    "process_image",
]
