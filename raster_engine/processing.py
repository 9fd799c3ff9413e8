"""
Orchestration: bytes in, enhanced or cut-out bytes out.

Each call builds its own governor, so concurrent calls share nothing but the
(read-only) resource budget.
"""

from __future__ import annotations

import dataclasses
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import cv2

from .analysis import ContentAnalysis, analyze
from .buffer import RasterBuffer
from .config import (
    MAX_INPUT_BYTES,
    SEGMENT_MAX_INPUT_BYTES,
    ResourceBudget,
    SegmentationOptions,
    UpscaleOptions,
)
from .constants import OutputFormat
from .enhancement import enhance
from .errors import UnsupportedFormatError
from .governor import ChunkGovernor, estimate_bytes
from .io_utils import (
    check_input,
    decode_image,
    encode_image,
    load_image_file,
    mime_type_for,
    save_image,
)
from .log import get_logger
from .metrics import QualityMetrics, compute_quality_metrics, segmentation_quality
from .planner import ProcessingPlan, plan, plan_segmentation
from .resampling import resample, resize_pixels
from .segmentation import apply_mask, segment

logger = get_logger(__name__)

ProgressCallback = Callable[[int, str], None]

MODE_UPSCALE = "upscale"
MODE_REMOVE_BG = "remove-bg"
MODES = (MODE_UPSCALE, MODE_REMOVE_BG)


@dataclass
class UpscaleResult:
    data: bytes
    buffer: RasterBuffer
    original_dimensions: Tuple[int, int]
    final_dimensions: Tuple[int, int]
    actual_scale_factor: float
    algorithms_used: List[str]
    processing_time_ms: float
    quality_metrics: QualityMetrics
    analysis: ContentAnalysis
    output_format: OutputFormat = OutputFormat.PNG

    def summary(self) -> Dict:
        return {
            "original_dimensions": list(self.original_dimensions),
            "final_dimensions": list(self.final_dimensions),
            "actual_scale_factor": round(self.actual_scale_factor, 4),
            "algorithms_used": list(self.algorithms_used),
            "processing_time_ms": round(self.processing_time_ms, 1),
            "quality": self.quality_metrics.to_dict(),
            "analysis": self.analysis.to_dict(),
        }


@dataclass
class SegmentationResult:
    data: bytes
    buffer: RasterBuffer
    mask: np.ndarray
    final_dimensions: Tuple[int, int]
    working_dimensions: Tuple[int, int]
    algorithms_used: List[str]
    processing_time_ms: float
    quality: Dict[str, float] = field(default_factory=dict)
    output_format: OutputFormat = OutputFormat.PNG

    def summary(self) -> Dict:
        return {
            "final_dimensions": list(self.final_dimensions),
            "working_dimensions": list(self.working_dimensions),
            "algorithms_used": list(self.algorithms_used),
            "processing_time_ms": round(self.processing_time_ms, 1),
            "quality": dict(self.quality),
        }


def _report(progress: Optional[ProgressCallback], percent: int, stage: str) -> None:
    logger.debug("%3d%% %s", percent, stage)
    if progress is not None:
        progress(percent, stage)


def _reserve_source(source: RasterBuffer, governor: ChunkGovernor) -> int:
    """Count the decoded source (and the analysis copies made from it) against the budget."""
    return governor.reserve_pixels(source.pixel_count, label="decoded source")


def _cap_source(source: RasterBuffer, pixel_ceiling: int, governor: ChunkGovernor) -> RasterBuffer:
    """
    Shrink a source above ``pixel_ceiling`` to fit it before any analysis.
    The output is bounded by the same ceiling.
    """
    if source.pixel_count <= pixel_ceiling:
        return source
    scale = math.sqrt(pixel_ceiling / float(source.pixel_count))
    w = max(1, int(math.floor(source.width * scale)))
    h = max(1, int(math.floor(source.height * scale)))
    logger.info("Source %dx%d over %d px, reduced to %dx%d", source.width, source.height, pixel_ceiling, w, h)
    reduced = source.with_pixels(resize_pixels(source.pixels, w, h, governor=governor))
    governor.checkpoint("source reduction")
    return reduced


# ---------------------------------------------
# Upscaling
# ---------------------------------------------

def upscale_raster(
    buffer: RasterBuffer,
    options: Optional[UpscaleOptions] = None,
    governor: Optional[ChunkGovernor] = None,
    progress: Optional[ProgressCallback] = None,
) -> Tuple[RasterBuffer, ProcessingPlan, ContentAnalysis]:
    """Analyze, plan, resample and enhance an already decoded buffer."""
    options = options or UpscaleOptions()
    governor = governor or ChunkGovernor()

    _report(progress, 20, "Analyzing content")
    analysis = analyze(buffer)
    if options.content_type is not None:
        analysis = dataclasses.replace(analysis, content_type=options.content_type)
    governor.checkpoint("analysis")

    _report(progress, 30, "Planning")
    limits = governor.budget
    processing_plan = plan(buffer.dimensions, options.scale_factor, analysis, limits, options)

    # Source, output and one intermediate held for the whole run
    held = estimate_bytes(processing_plan.working_pixels, bytes_per_pixel=4, pass_multiplier=3)
    governor.reserve(held, label="upscale buffers")
    try:
        _report(progress, 40, f"Applying {processing_plan.primary_algorithm.value}")
        upscaled = resample(buffer, processing_plan, governor)

        _report(progress, 80, "Enhancing")
        upscaled = enhance(upscaled, analysis, options)
        governor.checkpoint("enhancement")
    finally:
        governor.release(held)
    return upscaled, processing_plan, analysis


def upscale_image(
    data: bytes,
    mime_type: str,
    options: Optional[UpscaleOptions] = None,
    progress: Optional[ProgressCallback] = None,
    budget: Optional[ResourceBudget] = None,
    cancel: Optional[threading.Event] = None,
    max_input_bytes: int = MAX_INPUT_BYTES,
) -> UpscaleResult:
    """
    Upscale encoded image bytes.

    Raises InputTooLargeError / UnsupportedFormatError before decoding,
    DecodeError, MemoryLimitExceededError, OperationCancelledError or
    EncodeError while running. Nothing partial is returned.
    """
    start = time.perf_counter()
    options = options or UpscaleOptions()

    check_input(data, mime_type, max_input_bytes)
    _report(progress, 10, "Loading image")
    source = decode_image(data)
    governor = ChunkGovernor(budget, cancel_event=cancel)

    held = _reserve_source(source, governor)
    try:
        work = _cap_source(source, governor.budget.resample_pixel_ceiling, governor)
        upscaled, processing_plan, analysis = upscale_raster(work, options, governor, progress)
    finally:
        governor.release(held)

    _report(progress, 90, "Encoding output")
    encoded = encode_image(upscaled, options.output_format, options.quality)
    metrics = compute_quality_metrics(upscaled)
    elapsed = (time.perf_counter() - start) * 1000.0
    _report(progress, 100, "Complete")

    logger.info(
        "Upscaled %dx%d -> %dx%d in %.0f ms (%s)",
        source.width, source.height, upscaled.width, upscaled.height, elapsed,
        ", ".join(processing_plan.algorithms_used),
    )
    return UpscaleResult(
        data=encoded,
        buffer=upscaled,
        original_dimensions=source.dimensions,
        final_dimensions=upscaled.dimensions,
        actual_scale_factor=upscaled.width / float(source.width),
        algorithms_used=list(processing_plan.algorithms_used),
        processing_time_ms=elapsed,
        quality_metrics=metrics,
        analysis=analysis,
        output_format=options.output_format,
    )


# ---------------------------------------------
# Background removal
# ---------------------------------------------

def remove_background_raster(
    buffer: RasterBuffer,
    options: Optional[SegmentationOptions] = None,
    governor: Optional[ChunkGovernor] = None,
    progress: Optional[ProgressCallback] = None,
) -> Tuple[RasterBuffer, np.ndarray, ProcessingPlan]:
    """Segment a decoded buffer and apply the mask; returns (cutout, mask, plan)."""
    options = options or SegmentationOptions()
    governor = governor or ChunkGovernor()

    _report(progress, 20, "Planning")
    seg_plan = plan_segmentation(buffer.dimensions, governor.budget, options.max_dimension)
    work_w, work_h = seg_plan.working_dimensions

    work = buffer
    if (work_w, work_h) != buffer.dimensions:
        logger.info("Segmenting at %dx%d (source %dx%d)", work_w, work_h, buffer.width, buffer.height)
        work = buffer.with_pixels(resize_pixels(buffer.pixels, work_w, work_h, governor=governor))
        governor.checkpoint("working resize")

    _report(progress, 40, "Detecting background")
    mask = segment(work, options, governor)

    _report(progress, 80, "Applying mask")
    if mask.shape != (buffer.height, buffer.width):
        mask = cv2.resize(mask, (buffer.width, buffer.height), interpolation=cv2.INTER_LINEAR)
    cutout = apply_mask(buffer, mask)
    governor.checkpoint("mask")
    return cutout, mask, seg_plan


def remove_background(
    data: bytes,
    mime_type: str,
    options: Optional[SegmentationOptions] = None,
    progress: Optional[ProgressCallback] = None,
    budget: Optional[ResourceBudget] = None,
    cancel: Optional[threading.Event] = None,
    max_input_bytes: int = SEGMENT_MAX_INPUT_BYTES,
) -> SegmentationResult:
    """Cut the foreground out of encoded image bytes (PNG / WebP output only)."""
    start = time.perf_counter()
    options = options or SegmentationOptions()

    if options.output_format is OutputFormat.JPEG:
        raise UnsupportedFormatError("JPEG cannot carry an alpha channel", format_name="jpeg")
    check_input(data, mime_type, max_input_bytes)
    _report(progress, 10, "Loading image")
    source = decode_image(data)
    governor = ChunkGovernor(budget, cancel_event=cancel)

    held = _reserve_source(source, governor)
    try:
        cutout, mask, seg_plan = remove_background_raster(source, options, governor, progress)
    finally:
        governor.release(held)

    _report(progress, 90, "Encoding output")
    encoded = encode_image(cutout, options.output_format, options.quality)
    elapsed = (time.perf_counter() - start) * 1000.0
    _report(progress, 100, "Complete")

    algorithms = list(seg_plan.algorithms_used) + [options.refinement.value]
    if options.feather_edges:
        algorithms.append("feathering")
    logger.info("Background removed on %dx%d in %.0f ms", source.width, source.height, elapsed)
    return SegmentationResult(
        data=encoded,
        buffer=cutout,
        mask=mask,
        final_dimensions=cutout.dimensions,
        working_dimensions=seg_plan.working_dimensions,
        algorithms_used=algorithms,
        processing_time_ms=elapsed,
        quality=segmentation_quality(mask),
        output_format=options.output_format,
    )


# ---------------------------------------------
# Files / batch
# ---------------------------------------------

Options = Union[UpscaleOptions, SegmentationOptions]
Result = Union[UpscaleResult, SegmentationResult]


def default_options(mode: str) -> Options:
    if mode == MODE_UPSCALE:
        return UpscaleOptions()
    if mode == MODE_REMOVE_BG:
        return SegmentationOptions()
    raise ValueError(f"Unknown mode: {mode!r} (expected one of {MODES})")


def process_one_image(
    input_image_path: Path,
    mode: str = MODE_UPSCALE,
    options: Optional[Options] = None,
    budget: Optional[ResourceBudget] = None,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressCallback] = None,
) -> Result:
    options = options or default_options(mode)
    path = Path(input_image_path)
    data = load_image_file(path, MAX_INPUT_BYTES if mode == MODE_UPSCALE else SEGMENT_MAX_INPUT_BYTES)
    mime = mime_type_for(path)
    if mode == MODE_UPSCALE:
        return upscale_image(data, mime, options, progress=progress, budget=budget, cancel=cancel)
    if mode == MODE_REMOVE_BG:
        return remove_background(data, mime, options, progress=progress, budget=budget, cancel=cancel)
    raise ValueError(f"Unknown mode: {mode!r} (expected one of {MODES})")


@dataclass
class BatchOutcome:
    input_path: Path
    output_path: Path
    ok: bool
    skipped: bool = False
    error: Optional[str] = None
    summary: Dict = field(default_factory=dict)


def _run_job(
    job: Tuple[Path, Path],
    mode: str,
    options: Optional[Options],
    overwrite: bool,
    budget: Optional[ResourceBudget],
    cancel: Optional[threading.Event],
) -> BatchOutcome:
    src, dst = job
    if dst.exists() and not overwrite:
        logger.info("Already present, skipping (overwrite off): %s", dst)
        return BatchOutcome(src, dst, ok=True, skipped=True)
    try:
        result = process_one_image(src, mode, options, budget=budget, cancel=cancel)
        save_image(dst, result.data)
    except Exception as e:
        logger.error("%s: %s", src, e)
        return BatchOutcome(src, dst, ok=False, error=f"{type(e).__name__}: {e}")
    return BatchOutcome(src, dst, ok=True, summary=result.summary())


def process_batch(
    jobs: Sequence[Tuple[Path, Path]],
    mode: str = MODE_UPSCALE,
    options: Optional[Options] = None,
    workers: int = 1,
    overwrite: bool = False,
    budget: Optional[ResourceBudget] = None,
    cancel: Optional[threading.Event] = None,
) -> List[BatchOutcome]:
    """
    Run independent pipelines over (input, output) pairs.

    A failing file is recorded and the batch moves on; outcomes come back in
    job order.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown mode: {mode!r} (expected one of {MODES})")
    workers = max(1, int(workers))
    if workers == 1 or len(jobs) <= 1:
        return [_run_job(job, mode, options, overwrite, budget, cancel) for job in jobs]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_run_job, job, mode, options, overwrite, budget, cancel) for job in jobs]
        return [f.result() for f in futures]
