"""Raster image enhancement engine.

This package contains:
- io_utils: filesystem helpers, size/format guards and the image codec
- analysis / planner: content classification and processing plans
- resampling / enhancement: upscaling algorithms and post-processing
- segmentation: background masks and cut-outs
- governor: memory accounting, cancellation and cooperative yields
- processing: end-to-end upscale / background removal / batch runs
- metrics: quality metrics and run history persistence
"""

from .buffer import RasterBuffer

from .config import (
    EnhanceOptions,
    ResourceBudget,
    SegmentationOptions,
    UpscaleOptions,
)

from .constants import (
    Algorithm,
    ContentType,
    OutputFormat,
    Refinement,
)

from .errors import (
    RasterEngineError,
    InputTooLargeError,
    UnsupportedFormatError,
    DecodeError,
    EncodeError,
    InvalidDimensionsError,
    MemoryLimitExceededError,
    OperationCancelledError,
)

from .io_utils import (
    ensure_dir,
    is_image_file,
    discover_images,
    make_output_path,
    check_input,
    decode_image,
    encode_image,
    save_image,
)

from .analysis import ContentAnalysis, analyze
from .planner import ProcessingPlan, plan, plan_segmentation
from .governor import ChunkGovernor
from .resampling import ALGORITHMS, get_algorithm, resample
from .enhancement import enhance
from .segmentation import apply_mask, segment

from .processing import (
    UpscaleResult,
    SegmentationResult,
    upscale_image,
    remove_background,
    process_one_image,
    process_batch,
)

from .metrics import (
    QualityMetrics,
    compute_quality_metrics,
    save_params_json,
    append_run_metrics,
)

__all__ = [
    # buffer / config / constants
    "RasterBuffer",
    "EnhanceOptions",
    "ResourceBudget",
    "SegmentationOptions",
    "UpscaleOptions",
    "Algorithm",
    "ContentType",
    "OutputFormat",
    "Refinement",
    # errors
    "RasterEngineError",
    "InputTooLargeError",
    "UnsupportedFormatError",
    "DecodeError",
    "EncodeError",
    "InvalidDimensionsError",
    "MemoryLimitExceededError",
    "OperationCancelledError",
    # io_utils
    "ensure_dir",
    "is_image_file",
    "discover_images",
    "make_output_path",
    "check_input",
    "decode_image",
    "encode_image",
    "save_image",
    # stages
    "ContentAnalysis",
    "analyze",
    "ProcessingPlan",
    "plan",
    "plan_segmentation",
    "ChunkGovernor",
    "ALGORITHMS",
    "get_algorithm",
    "resample",
    "enhance",
    "apply_mask",
    "segment",
    # processing
    "UpscaleResult",
    "SegmentationResult",
    "upscale_image",
    "remove_background",
    "process_one_image",
    "process_batch",
    # metrics
    "QualityMetrics",
    "compute_quality_metrics",
    "save_params_json",
    "append_run_metrics",
]
