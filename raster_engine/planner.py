"""
Processing planner: turns the analysis and the requested options into a
concrete, immutable plan. Deterministic and never fails, it only clamps.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .analysis import ContentAnalysis
from .config import (
    ARTIFACT_SCORE_THRESHOLD,
    CHUNK_PIXEL_THRESHOLD,
    MAX_OUTPUT_DIMENSION,
    MAX_SCALE,
    MAX_SEGMENT_DIMENSION,
    MIN_SCALE,
    ResourceBudget,
    TILE_SIZE,
    UpscaleOptions,
)
from .constants import Algorithm, ContentType
from .log import get_logger

logger = get_logger(__name__)

Dimensions = Tuple[int, int]


@dataclass(frozen=True)
class ProcessingPlan:
    scale_factor: float
    working_dimensions: Dimensions
    chunk_size: int
    primary_algorithm: Algorithm
    secondary_algorithm: Optional[Algorithm] = None
    algorithms_used: Tuple[str, ...] = field(default_factory=tuple)
    source_dimensions: Dimensions = (0, 0)

    @property
    def tiled(self) -> bool:
        return self.chunk_size > 0

    @property
    def working_pixels(self) -> int:
        return self.working_dimensions[0] * self.working_dimensions[1]


def clamp_scale(scale: float) -> float:
    if scale is None or not math.isfinite(scale):
        return MIN_SCALE
    return min(MAX_SCALE, max(MIN_SCALE, float(scale)))


def target_dimensions(width: int, height: int, scale: float) -> Dimensions:
    return max(1, int(math.floor(width * scale))), max(1, int(math.floor(height * scale)))


def fit_scale(width: int, height: int, scale: float, pixel_ceiling: int, max_dimension: int) -> float:
    """
    Shrink ``scale`` until floor(w*s) x floor(h*s) fits both the dimension
    limit and the pixel ceiling.
    """
    tw, th = target_dimensions(width, height, scale)
    if max_dimension and max(tw, th) > max_dimension:
        scale = min(scale, max_dimension / float(max(width, height)))
        tw, th = target_dimensions(width, height, scale)
    if tw * th > pixel_ceiling:
        scale *= math.sqrt(pixel_ceiling / float(tw * th))
        tw, th = target_dimensions(width, height, scale)
        # Float rounding can leave the product a hair over the ceiling
        while tw * th > pixel_ceiling and (tw > 1 or th > 1):
            scale *= 0.999
            tw, th = target_dimensions(width, height, scale)
    return scale


def select_primary(analysis: ContentAnalysis) -> Algorithm:
    ct = analysis.content_type
    if ct is ContentType.ART:
        return Algorithm.LINE_ART
    if ct is ContentType.TEXT:
        return Algorithm.LANCZOS3
    if ct is ContentType.PHOTO:
        if analysis.compression_artifact_score >= ARTIFACT_SCORE_THRESHOLD:
            return Algorithm.ARTIFACT_REDUCTION
        return Algorithm.RESIDUAL
    return Algorithm.GENERAL


def plan(
    original_dims: Dimensions,
    requested_scale: float,
    analysis: ContentAnalysis,
    limits: Optional[ResourceBudget] = None,
    options: Optional[UpscaleOptions] = None,
) -> ProcessingPlan:
    """Resampling plan for an upscale run."""
    limits = limits or ResourceBudget()
    options = options or UpscaleOptions(scale_factor=requested_scale)
    width, height = original_dims

    scale = clamp_scale(requested_scale)
    max_dim = options.max_output_dimension or MAX_OUTPUT_DIMENSION
    scale = fit_scale(width, height, scale, limits.resample_pixel_ceiling, max_dim)
    working = target_dimensions(width, height, scale)

    if options.primary_algorithm is not Algorithm.AUTO:
        primary = options.primary_algorithm
    else:
        primary = select_primary(analysis)

    secondary: Optional[Algorithm] = None
    if options.hybrid_mode:
        secondary = options.secondary_algorithm or Algorithm.BICUBIC
        if secondary is Algorithm.AUTO or secondary is primary:
            secondary = None if primary is Algorithm.BICUBIC else Algorithm.BICUBIC

    pixels = working[0] * working[1]
    chunk_size = TILE_SIZE if (options.chunk_processing or pixels > CHUNK_PIXEL_THRESHOLD) else 0

    used = [primary.value]
    if secondary is not None:
        used += [secondary.value, "hybrid-blend"]

    result = ProcessingPlan(
        scale_factor=scale,
        working_dimensions=working,
        chunk_size=chunk_size,
        primary_algorithm=primary,
        secondary_algorithm=secondary,
        algorithms_used=tuple(used),
        source_dimensions=(width, height),
    )
    logger.info(
        "Plan: %dx%d -> %dx%d (scale %.3f), primary=%s secondary=%s chunk=%d",
        width, height, working[0], working[1], scale, primary.value,
        secondary.value if secondary else None, chunk_size,
    )
    return result


def plan_segmentation(
    original_dims: Dimensions,
    limits: Optional[ResourceBudget] = None,
    max_dimension: int = MAX_SEGMENT_DIMENSION,
) -> ProcessingPlan:
    """Working size for segmentation: never upscales, tighter pixel ceiling."""
    limits = limits or ResourceBudget()
    width, height = original_dims
    scale = fit_scale(width, height, 1.0, limits.segment_pixel_ceiling, max_dimension)
    working = (width, height) if scale >= 1.0 else target_dimensions(width, height, scale)
    pixels = working[0] * working[1]
    return ProcessingPlan(
        scale_factor=min(1.0, scale),
        working_dimensions=working,
        chunk_size=TILE_SIZE if pixels > CHUNK_PIXEL_THRESHOLD else 0,
        primary_algorithm=Algorithm.BICUBIC,
        secondary_algorithm=None,
        algorithms_used=("edge-detection", "color-clustering", "flood-fill", "morphology"),
        source_dimensions=(width, height),
    )
