"""
Content analyzer: samples a raster on a stride and classifies it as
photo / art / text / mixed, with noise, edge, skin-tone and JPEG blockiness
estimates. Always returns a best-effort result.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

import numpy as np

from .buffer import RasterBuffer
from .config import (
    ANALYSIS_STRIDE,
    ART_EDGE_RATIO,
    ART_UNIQUE_COLOR_RATIO,
    EDGE_GRADIENT_THRESHOLD,
    PHOTO_ARTIFACT_MAX,
    PHOTO_NOISE_MAX,
    TEXT_CONTRAST_THRESHOLD,
    TEXT_NEIGHBOUR_COUNT,
    TEXT_RATIO_THRESHOLD,
)
from .constants import ContentType
from .filters import NEIGHBOUR_OFFSETS, luminance
from .log import get_logger

logger = get_logger(__name__)

NOISE_VARIANCE_MIN = 6.0
NOISE_VARIANCE_MAX = 400.0
BLOCK = 8


@dataclass(frozen=True)
class ContentAnalysis:
    content_type: ContentType
    noise_level: float
    edge_density: float
    skin_tone_ratio: float
    compression_artifact_score: float
    text_ratio: float = 0.0
    unique_color_ratio: float = 0.0
    sample_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["content_type"] = self.content_type.value
        return d


def _gather(padded: np.ndarray, ys: np.ndarray, xs: np.ndarray, pad: int, dy: int, dx: int) -> np.ndarray:
    return padded[np.ix_(ys + pad + dy, xs + pad + dx)]


def _skin_tone(rgb: np.ndarray) -> np.ndarray:
    r = rgb[..., 0]
    g = rgb[..., 1]
    b = rgb[..., 2]
    spread = rgb.max(axis=-1) - rgb.min(axis=-1)
    return (
        (r > 95) & (g > 40) & (b > 20)
        & (spread > 15)
        & (np.abs(r - g) > 15)
        & (r > g) & (r > b)
    )


def _block_ratio(gray: np.ndarray) -> float:
    """Share of 8x8 blocks whose right boundary jumps much more than their inside."""
    h, w = gray.shape
    nby, nbx = h // BLOCK, w // BLOCK
    if nby < 1 or nbx < 2:
        return 0.0
    g = gray[:nby * BLOCK, :nbx * BLOCK]
    hdiff = np.abs(np.diff(g, axis=1))                         # (H8, W8-1)

    boundary = hdiff[:, BLOCK - 1::BLOCK]                       # (H8, nbx-1)
    boundary = boundary.reshape(nby, BLOCK, nbx - 1).mean(axis=1)

    inner = np.concatenate([hdiff, np.zeros((hdiff.shape[0], 1), hdiff.dtype)], axis=1)
    inner = inner.reshape(nby, BLOCK, nbx, BLOCK)[..., :BLOCK - 1].mean(axis=(1, 3))

    blocky = (boundary > 2.0 * inner[:, :-1] + 1.0) & (boundary > 2.0)
    return float(blocky.mean())


def compression_artifact_score(gray: np.ndarray) -> float:
    return float(np.clip((_block_ratio(gray) + _block_ratio(gray.T)) / 2.0, 0.0, 1.0))


def classify(text_ratio: float, unique_color_ratio: float, edge_ratio: float,
             noise_level: float, artifact_score: float) -> ContentType:
    if text_ratio > TEXT_RATIO_THRESHOLD:
        return ContentType.TEXT
    if unique_color_ratio < ART_UNIQUE_COLOR_RATIO and edge_ratio > ART_EDGE_RATIO:
        return ContentType.ART
    if noise_level < PHOTO_NOISE_MAX and artifact_score < PHOTO_ARTIFACT_MAX:
        return ContentType.PHOTO
    return ContentType.MIXED


def analyze(buffer: RasterBuffer, stride: int = ANALYSIS_STRIDE) -> ContentAnalysis:
    """
    Sample every ``stride``-th pixel in both directions and aggregate the
    per-sample indicators into ratios.
    """
    rgb = buffer.rgb().astype(np.int16)
    h, w = rgb.shape[:2]
    ys = np.arange(0, h, stride)
    xs = np.arange(0, w, stride)
    total = float(len(ys) * len(xs))

    pad = 2
    padded = np.pad(rgb, ((pad, pad), (pad, pad), (0, 0)), mode="edge")
    center = _gather(padded, ys, xs, pad, 0, 0)

    # 3x3 max gradient → edges
    max_grad = np.zeros(center.shape[:2], dtype=np.int16)
    for dy, dx in NEIGHBOUR_OFFSETS:
        diff = np.abs(center - _gather(padded, ys, xs, pad, dy, dx)).sum(axis=-1)
        np.maximum(max_grad, diff, out=max_grad)
    is_edge = max_grad > EDGE_GRADIENT_THRESHOLD

    # 5x5 high-contrast neighbours → text strokes
    bright = padded.sum(axis=-1).astype(np.float32) / 3.0
    c_bright = bright[np.ix_(ys + pad, xs + pad)]
    contrast_count = np.zeros(c_bright.shape, dtype=np.int16)
    for dy in range(-2, 3):
        for dx in range(-2, 3):
            if dy == 0 and dx == 0:
                continue
            nb = bright[np.ix_(ys + pad + dy, xs + pad + dx)]
            contrast_count += (np.abs(c_bright - nb) > TEXT_CONTRAST_THRESHOLD)
    is_text = contrast_count > TEXT_NEIGHBOUR_COUNT

    # 3x3 luminance variance on non-edge samples → noise
    luma = luminance(padded)
    acc = np.zeros(c_bright.shape, dtype=np.float32)
    acc_sq = np.zeros(c_bright.shape, dtype=np.float32)
    for dy in range(-1, 2):
        for dx in range(-1, 2):
            v = luma[np.ix_(ys + pad + dy, xs + pad + dx)]
            acc += v
            acc_sq += v * v
    variance = acc_sq / 9.0 - (acc / 9.0) ** 2
    is_noise = (~is_edge) & (variance > NOISE_VARIANCE_MIN) & (variance < NOISE_VARIANCE_MAX)

    is_skin = _skin_tone(center)

    q = (center // 16).astype(np.int32)
    keys = q[..., 0] * 256 + q[..., 1] * 16 + q[..., 2]
    unique_ratio = len(np.unique(keys)) / total

    artifact = compression_artifact_score(luminance(buffer.rgb()))

    edge_ratio = float(is_edge.mean())
    text_ratio = float(is_text.mean())
    noise_level = float(is_noise.mean())

    content_type = classify(text_ratio, unique_ratio, edge_ratio, noise_level, artifact)
    analysis = ContentAnalysis(
        content_type=content_type,
        noise_level=noise_level,
        edge_density=edge_ratio,
        skin_tone_ratio=float(is_skin.mean()),
        compression_artifact_score=artifact,
        text_ratio=text_ratio,
        unique_color_ratio=float(unique_ratio),
        sample_count=int(total),
    )
    logger.debug("Content analysis: %s", analysis.to_dict())
    return analysis
