"""
Engine configuration: named constants, option objects and the resource budget.

A few limits can be overridden from the environment (``RASTER_*`` variables),
everything else is passed explicitly through the option dataclasses.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .constants import Algorithm, ContentType, OutputFormat, Refinement

# ============================================================================
# INPUT GUARDS
# ============================================================================

MAX_INPUT_BYTES = int(float(os.environ.get("RASTER_MAX_INPUT_MB", 25)) * 1024 * 1024)
SEGMENT_MAX_INPUT_BYTES = int(float(os.environ.get("RASTER_SEGMENT_MAX_INPUT_MB", 20)) * 1024 * 1024)

SUPPORTED_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/bmp",
    "image/tiff",
}

# ============================================================================
# PLANNER
# ============================================================================

MIN_SCALE = 1.1
MAX_SCALE = 4.0
DEFAULT_SCALE = 2.0

RESAMPLE_PIXEL_CEILING = int(os.environ.get("RASTER_RESAMPLE_CEILING", 2_000_000))
SEGMENT_PIXEL_CEILING = int(os.environ.get("RASTER_SEGMENT_CEILING", 1_000_000))
MAX_OUTPUT_DIMENSION = 4096
MAX_SEGMENT_DIMENSION = 2048

ARTIFACT_SCORE_THRESHOLD = 0.3

# ============================================================================
# TILING / MEMORY
# ============================================================================

TILE_SIZE = int(os.environ.get("RASTER_TILE_SIZE", 256))
TILE_OVERLAP = int(os.environ.get("RASTER_TILE_OVERLAP", 32))
CHUNK_PIXEL_THRESHOLD = 512 * 512

# float32 RGBA working copies
WORKING_BYTES_PER_PIXEL = 16
DEFAULT_MEMORY_LIMIT = int(float(os.environ.get("RASTER_MEMORY_LIMIT_MB", 512)) * 1024 * 1024)

# ============================================================================
# ANALYZER
# ============================================================================

ANALYSIS_STRIDE = 4
EDGE_GRADIENT_THRESHOLD = 40
TEXT_CONTRAST_THRESHOLD = 100
TEXT_NEIGHBOUR_COUNT = 8
TEXT_RATIO_THRESHOLD = 0.15
ART_UNIQUE_COLOR_RATIO = 0.05
ART_EDGE_RATIO = 0.3
PHOTO_NOISE_MAX = 0.2
PHOTO_ARTIFACT_MAX = 0.3

# ============================================================================
# SEGMENTATION
# ============================================================================

EDGE_SCALES = (1, 2, 3)
KMEANS_CLUSTERS = 5
KMEANS_ROUNDS = 15
KMEANS_EPSILON = 0.5
KMEANS_SAMPLE_STRIDE = 3
BACKGROUND_SCORE_THRESHOLD = 0.35
FLOOD_SEED_COUNT = 12
COLOR_MATCH_DISTANCE = 40.0
COLOR_GROW_BAND = 2

MORPH_RADIUS = 2
GUIDED_RADIUS = 4
GUIDED_EPS = 1e-3
RELAXATION_ITERATIONS = 3
FEATHER_RADIUS = 8
MIN_KERNEL_FOOTPRINT = 7
MIN_REGION_FRACTION = 0.0005

DEFAULT_SENSITIVITY = 25


@dataclass
class ResourceBudget:
    """
    Memory ceiling handed to a pipeline run by the host.

    ``max_bytes`` is the hard limit enforced by the chunk governor.
    """
    max_bytes: int = DEFAULT_MEMORY_LIMIT
    resample_pixel_ceiling: int = RESAMPLE_PIXEL_CEILING
    segment_pixel_ceiling: int = SEGMENT_PIXEL_CEILING

    @classmethod
    def from_available_memory(cls, fraction: float = 0.25, floor_bytes: int = 64 * 1024 * 1024) -> "ResourceBudget":
        """Budget sized from the host's currently available physical memory."""
        try:
            available = os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
        except (ValueError, OSError, AttributeError):
            return cls()
        return cls(max_bytes=max(floor_bytes, int(available * fraction)))


@dataclass
class UpscaleOptions:
    scale_factor: float = DEFAULT_SCALE
    primary_algorithm: Algorithm = Algorithm.AUTO
    secondary_algorithm: Optional[Algorithm] = None
    hybrid_mode: bool = True
    content_type: Optional[ContentType] = None
    enhance_details: bool = True
    reduce_noise: bool = True
    sharpen_amount: float = 0.0            # 0-100
    color_enhancement: bool = True
    contrast_boost: float = 0.0            # 0-100
    chunk_processing: bool = False
    output_format: OutputFormat = OutputFormat.PNG
    quality: int = 95                      # 0-100
    max_output_dimension: int = MAX_OUTPUT_DIMENSION

    def __post_init__(self):
        self.primary_algorithm = Algorithm.parse(self.primary_algorithm)
        if self.secondary_algorithm is not None:
            self.secondary_algorithm = Algorithm.parse(self.secondary_algorithm)
        if self.content_type is not None and not isinstance(self.content_type, ContentType):
            self.content_type = ContentType(str(self.content_type).lower())
        self.output_format = OutputFormat.parse(self.output_format)
        self.sharpen_amount = float(min(100.0, max(0.0, self.sharpen_amount)))
        self.contrast_boost = float(min(100.0, max(0.0, self.contrast_boost)))
        self.quality = int(min(100, max(0, self.quality)))

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


@dataclass
class EnhanceOptions:
    """Switches for the post-resample enhancement steps."""
    enhance_details: bool = True
    reduce_noise: bool = True
    sharpen_amount: float = 0.0
    color_enhancement: bool = True
    contrast_boost: float = 0.0

    @classmethod
    def disabled(cls) -> "EnhanceOptions":
        return cls(enhance_details=False, reduce_noise=False, sharpen_amount=0.0,
                   color_enhancement=False, contrast_boost=0.0)

    @classmethod
    def from_upscale(cls, options: UpscaleOptions) -> "EnhanceOptions":
        return cls(
            enhance_details=options.enhance_details,
            reduce_noise=options.reduce_noise,
            sharpen_amount=options.sharpen_amount,
            color_enhancement=options.color_enhancement,
            contrast_boost=options.contrast_boost,
        )


@dataclass
class SegmentationOptions:
    sensitivity: float = DEFAULT_SENSITIVITY      # 0-100
    feather_edges: bool = True
    feather_radius: int = FEATHER_RADIUS
    morph_radius: int = MORPH_RADIUS
    refinement: Refinement = Refinement.GUIDED
    clusters: int = KMEANS_CLUSTERS
    output_format: OutputFormat = OutputFormat.PNG
    quality: int = 95
    max_dimension: int = MAX_SEGMENT_DIMENSION

    def __post_init__(self):
        self.sensitivity = float(min(100.0, max(0.0, self.sensitivity)))
        self.refinement = Refinement(self.refinement)
        self.output_format = OutputFormat.parse(self.output_format)
        self.quality = int(min(100, max(0, self.quality)))
        self.clusters = max(2, int(self.clusters))

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


def _plain(d: Dict[str, Any]) -> Dict[str, Any]:
    """Enum members → their values, for JSON history files."""
    out = {}
    for k, v in d.items():
        if hasattr(v, "value"):
            out[k] = v.value
        elif isinstance(v, dict):
            out[k] = _plain(v)
        else:
            out[k] = v
    return out
