"""
Batch pipeline for the raster enhancement engine.

Main features:
- Processes a single image file OR a whole folder of images (optionally keeping
  the sub-folder structure).
- Two modes: ``upscale`` (content-aware upscaling + enhancement) and
  ``remove-bg`` (background segmentation, transparent cut-out).
- Writes results to an output folder.
- Appends the run parameters and per-run metrics to JSON history files in the
  models folder.

Usage examples:
  - Upscale everything under data/input into data/transformed
      python pipeline.py --input data/input --output data/transformed --scale 2

  - One file, force an algorithm, overwrite an existing output
      python pipeline.py -i data/input/photo.jpg -o data/transformed -s 3 --algorithm lanczos3 --overwrite

  - Remove backgrounds, keep the folder structure, 4 workers
      python pipeline.py --mode remove-bg -i data/input -o data/cutouts --keep-structure --workers 4

Defaults:
  - input:  data/input
  - output: data/transformed
  - models: models (JSON history of parameters and metrics)
"""
from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import List, Optional, Tuple

from raster_engine.config import (
    DEFAULT_SCALE,
    DEFAULT_SENSITIVITY,
    FEATHER_RADIUS,
    MAX_OUTPUT_DIMENSION,
    ResourceBudget,
    SegmentationOptions,
    UpscaleOptions,
)
from raster_engine.constants import Algorithm, ContentType, OutputFormat, Refinement
from raster_engine.io_utils import discover_images, ensure_dir, is_image_file, make_output_path
from raster_engine.log import get_logger, setup_logging
from raster_engine.metrics import append_run_metrics, save_params_json
from raster_engine.processing import MODE_REMOVE_BG, MODE_UPSCALE, MODES, process_batch

logger = get_logger("pipeline")


def collect_jobs(
    input_path: str,
    output_dir: str,
    mode: str,
    output_format: OutputFormat,
    keep_structure: bool,
) -> Optional[List[Tuple[Path, Path]]]:
    """(input, output) pairs for a file or a folder; None when there is nothing to do."""
    if not input_path:
        logger.error("--input is empty. Provide a file or a folder.")
        return None

    inp = Path(input_path)
    out_dir = Path(output_dir)

    if inp.is_file():
        if not is_image_file(inp):
            logger.error("Not a supported image file: %s", inp)
            return None
        files = [inp]
    elif inp.is_dir():
        files = discover_images(inp)
        if not files:
            logger.error("No images found in: %s", inp)
            return None
    else:
        logger.error("Path not found: %s", inp)
        return None

    input_root = inp if inp.is_dir() else inp.parent
    return [
        (f, make_output_path(f, input_root, out_dir, keep_structure, mode, output_format))
        for f in files
    ]


def run_pipeline_on_path(
    input_path: str,
    output_dir: str,
    mode: str = MODE_UPSCALE,
    options: Optional[UpscaleOptions | SegmentationOptions] = None,
    keep_structure: bool = True,
    overwrite: bool = False,
    models_dir: Optional[str] = None,
    workers: int = 1,
    budget: Optional[ResourceBudget] = None,
) -> int:
    """Runs the pipeline on an image file or folder. Returns the number of failures."""
    if options is None:
        options = UpscaleOptions() if mode == MODE_UPSCALE else SegmentationOptions()

    jobs = collect_jobs(input_path, output_dir, mode, options.output_format, keep_structure)
    if jobs is None:
        return 1

    out_dir = Path(output_dir)
    ensure_dir(out_dir)

    if models_dir:
        save_params_json(models_dir, {
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
            "mode": mode,
            "input": str(Path(input_path).resolve()),
            "output": str(out_dir.resolve()),
            "keep_structure": keep_structure,
            "overwrite": overwrite,
            "workers": workers,
            "options": options.to_dict(),
        })

    t0 = time.time()
    outcomes = process_batch(jobs, mode, options, workers=workers, overwrite=overwrite, budget=budget)
    dt = time.time() - t0

    ok_count = sum(1 for o in outcomes if o.ok)
    failures = [o for o in outcomes if not o.ok]

    if models_dir:
        append_run_metrics(models_dir, {
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
            "mode": mode,
            "files": len(outcomes),
            "succeeded": ok_count,
            "skipped": sum(1 for o in outcomes if o.skipped),
            "failed": len(failures),
            "elapsed_s": round(dt, 3),
            "results": [
                {"input": str(o.input_path), "output": str(o.output_path), **o.summary}
                for o in outcomes if o.ok and not o.skipped
            ],
            "errors": [{"input": str(o.input_path), "error": o.error} for o in failures],
        })

    print(f"Done. {ok_count}/{len(outcomes)} succeeded in {dt:.2f}s. Output: {out_dir}")
    if failures:
        print("Failures:")
        for o in failures:
            print(" -", o.input_path, "->", o.error)
    return len(failures)


# ---------------------------------------------
# CLI
# ---------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Raster enhancement engine: content-aware upscaling and background removal",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--mode", "-m", choices=MODES, default=MODE_UPSCALE, help="Operation to run")
    p.add_argument("--input", "-i", default=str(Path("data") / "input"), help="Input path (image file or folder)")
    p.add_argument("--output", "-o", default=str(Path("data") / "transformed"), help="Output folder")
    p.add_argument("--models", default=str(Path("models")), help="Folder for run parameter / metrics history")

    p.add_argument("--keep-structure", action="store_true", help="Keep the sub-folder structure")
    p.add_argument("--overwrite", action="store_true", help="Overwrite existing outputs")
    p.add_argument("--workers", type=int, default=1, help="Images processed in parallel")
    p.add_argument("--memory-limit-mb", type=float, default=None,
                   help="Memory ceiling per image (default: a share of available memory)")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    p.add_argument("--log-file", default=None, help="Also write a detailed log to this file")

    p.add_argument("--format", choices=[f.value for f in OutputFormat] + ["jpg"], default=OutputFormat.PNG.value,
                   help="Output format (remove-bg accepts png / webp only)")
    p.add_argument("--quality", type=int, default=95, help="Encoder quality 0-100")

    # Upscaling
    up = p.add_argument_group("upscale")
    up.add_argument("--scale", "-s", type=float, default=DEFAULT_SCALE, help="Scale factor (1.1-4.0)")
    up.add_argument("--algorithm", default=Algorithm.AUTO.value,
                    help=f"Primary algorithm: {', '.join(Algorithm.list())}")
    up.add_argument("--secondary", default=None, help="Secondary algorithm for hybrid mode (default bicubic)")
    up.add_argument("--no-hybrid", action="store_true", help="Disable the hybrid refinement blend")
    up.add_argument("--content-type", choices=ContentType.list(), default=None, help="Override content detection")
    up.add_argument("--no-details", action="store_true", help="Disable detail enhancement")
    up.add_argument("--no-denoise", action="store_true", help="Disable noise reduction")
    up.add_argument("--sharpen", type=float, default=0.0, help="Sharpen amount 0-100")
    up.add_argument("--no-color", action="store_true", help="Disable colour enhancement")
    up.add_argument("--contrast", type=float, default=0.0, help="Contrast boost 0-100")
    up.add_argument("--chunked", action="store_true", help="Force tiled processing")
    up.add_argument("--max-dimension", type=int, default=MAX_OUTPUT_DIMENSION, help="Largest output side")

    # Background removal
    bg = p.add_argument_group("remove-bg")
    bg.add_argument("--sensitivity", type=float, default=DEFAULT_SENSITIVITY, help="Edge sensitivity 0-100")
    bg.add_argument("--no-feather", action="store_true", help="Hard mask edges")
    bg.add_argument("--feather-radius", type=int, default=FEATHER_RADIUS, help="Feather band width in pixels")
    bg.add_argument("--refinement", choices=[r.value for r in Refinement], default=Refinement.GUIDED.value,
                    help="Mask smoothing method")
    return p


def options_from_args(args: argparse.Namespace) -> UpscaleOptions | SegmentationOptions:
    if args.mode == MODE_REMOVE_BG:
        return SegmentationOptions(
            sensitivity=args.sensitivity,
            feather_edges=not args.no_feather,
            feather_radius=args.feather_radius,
            refinement=args.refinement,
            output_format=args.format,
            quality=args.quality,
        )
    return UpscaleOptions(
        scale_factor=args.scale,
        primary_algorithm=args.algorithm,
        secondary_algorithm=args.secondary,
        hybrid_mode=not args.no_hybrid,
        content_type=args.content_type,
        enhance_details=not args.no_details,
        reduce_noise=not args.no_denoise,
        sharpen_amount=args.sharpen,
        color_enhancement=not args.no_color,
        contrast_boost=args.contrast,
        chunk_processing=args.chunked,
        output_format=args.format,
        quality=args.quality,
        max_output_dimension=args.max_dimension,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        options = options_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    if args.memory_limit_mb:
        budget = ResourceBudget(max_bytes=int(args.memory_limit_mb * 1024 * 1024))
    else:
        budget = ResourceBudget.from_available_memory()

    ensure_dir(Path(args.models))

    failures = run_pipeline_on_path(
        input_path=args.input,
        output_dir=args.output,
        mode=args.mode,
        options=options,
        keep_structure=args.keep_structure,
        overwrite=args.overwrite,
        models_dir=args.models,
        workers=args.workers,
        budget=budget,
    )
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
