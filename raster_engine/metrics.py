from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from .buffer import RasterBuffer
from .filters import NEIGHBOUR_OFFSETS
from .io_utils import ensure_dir
from .log import get_logger

logger = get_logger(__name__)

QUALITY_STRIDE = 8
QUALITY_MARGIN = 4


# ---------------------------------------------
# Image quality (informational)
# ---------------------------------------------

@dataclass(frozen=True)
class QualityMetrics:
    sharpness: float
    noise_level: float
    artifact_level: float
    overall_quality: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def compute_quality_metrics(buffer: RasterBuffer) -> QualityMetrics:
    """
    Sampled every 8th pixel away from the border:
      sharpness = min(100, mean max-neighbour gradient / 2)
      noise     = min(100, mean 5x5 brightness deviation / 5)
      artifacts = max(0, 100 - mean max-neighbour gradient / 3)
    """
    rgb = buffer.rgb().astype(np.int16)
    h, w = rgb.shape[:2]
    ys = np.arange(QUALITY_MARGIN, h - QUALITY_MARGIN, QUALITY_STRIDE)
    xs = np.arange(QUALITY_MARGIN, w - QUALITY_MARGIN, QUALITY_STRIDE)
    if len(ys) == 0 or len(xs) == 0:
        return QualityMetrics(0.0, 0.0, 0.0, 0.0)

    center = rgb[np.ix_(ys, xs)]
    max_grad = np.zeros(center.shape[:2], dtype=np.int16)
    for dy, dx in NEIGHBOUR_OFFSETS:
        diff = np.abs(center - rgb[np.ix_(ys + dy, xs + dx)]).sum(axis=-1)
        np.maximum(max_grad, diff, out=max_grad)

    bright = rgb.sum(axis=-1).astype(np.float32) / 3.0
    c_bright = bright[np.ix_(ys, xs)]
    variation = np.zeros(c_bright.shape, dtype=np.float32)
    for dy in range(-2, 3):
        for dx in range(-2, 3):
            variation += np.abs(bright[np.ix_(ys + dy, xs + dx)] - c_bright)

    avg_grad = float(max_grad.mean())
    avg_var = float((variation / 25.0).mean())

    sharpness = min(100.0, avg_grad / 2.0)
    noise = min(100.0, avg_var / 5.0)
    artifacts = max(0.0, 100.0 - avg_grad / 3.0)
    overall = float(np.clip((sharpness + (100.0 - noise) + (100.0 - artifacts)) / 3.0, 0.0, 100.0))
    return QualityMetrics(sharpness, noise, artifacts, overall)


def segmentation_quality(mask: np.ndarray) -> Dict[str, float]:
    """Share of boundary pixels, clean background and solid foreground in the interior."""
    if mask.shape[0] < 3 or mask.shape[1] < 3:
        return {"edge_accuracy": 0.0, "detail_preservation": 0.0, "background_cleanness": 0.0}
    background = mask > 128
    inner = background[1:-1, 1:-1]
    boundary = np.zeros(inner.shape, dtype=bool)
    for dy, dx in NEIGHBOUR_OFFSETS:
        nb = background[1 + dy:mask.shape[0] - 1 + dy, 1 + dx:mask.shape[1] - 1 + dx]
        boundary |= nb != inner
    total = float(inner.size)
    return {
        "edge_accuracy": float(boundary.sum() / total),
        "detail_preservation": float((~inner & ~boundary).sum() / total),
        "background_cleanness": float(inner.sum() / total),
    }


# ---------------------------------------------
# Run history
# ---------------------------------------------

def _load_json_list(path: Path) -> List[Any]:
    if not path.exists():
        return []
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable history file %s: %s", path, e)
        return []
    if not isinstance(data, list):
        data = [data]
    return data


def _append_json_list(path: Path, entry: Any) -> None:
    hist = _load_json_list(path)
    hist.append(entry)
    with path.open("w", encoding="utf-8") as f:
        json.dump(hist, f, ensure_ascii=False, indent=2)


def save_params_json(models_dir: str | Path, params: dict) -> None:
    models_path = Path(models_dir)
    ensure_dir(models_path)
    _append_json_list(models_path / "run_params.json", params)


def append_run_metrics(models_dir: str | Path, run_metrics: dict) -> None:
    models_path = Path(models_dir)
    ensure_dir(models_path)
    _append_json_list(models_path / "metrics.json", run_metrics)
