"""
Resampling engine.

Every algorithm variant implements ``ResamplingAlgorithm.apply(buffer, plan,
governor)`` and returns a new buffer sized to ``plan.working_dimensions``.
Kernel resampling is separable: per destination column / row the tap weights
are computed once, out-of-bounds taps are dropped and the remaining weights are
normalised by their own sum, so borders neither darken nor brighten.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import cv2
from scipy.interpolate import RectBivariateSpline

from .buffer import RasterBuffer, from_float01, to_float01
from .config import TILE_OVERLAP
from .constants import Algorithm
from .enhancement import boost_details, high_pass_boost
from .errors import InvalidDimensionsError
from .filters import (
    anisotropic_diffusion_color,
    compute_local_energy,
    luminance,
    max_neighbor_gradient,
    write_interior,
)
from .governor import ChunkGovernor, tile_grid
from .log import get_logger
from .planner import ProcessingPlan

logger = get_logger(__name__)

WEIGHT_EPS = 1e-8
LINE_ART_EDGE_GRADIENT = 60


# ---------------------------------------------
# Kernels
# ---------------------------------------------

def cubic_kernel(x: np.ndarray, a: float = -0.5) -> np.ndarray:
    """Keys cubic convolution kernel, support [-2, 2]."""
    x = np.abs(x)
    x2 = x * x
    x3 = x2 * x
    out = np.zeros_like(x)
    near = x <= 1.0
    far = (x > 1.0) & (x < 2.0)
    out[near] = (a + 2.0) * x3[near] - (a + 3.0) * x2[near] + 1.0
    out[far] = a * x3[far] - 5.0 * a * x2[far] + 8.0 * a * x[far] - 4.0 * a
    return out


def lanczos_kernel(x: np.ndarray, a: int = 3) -> np.ndarray:
    """sinc(x) * sinc(x / a) on |x| < a."""
    x = np.asarray(x, dtype=np.float64)
    out = np.sinc(x) * np.sinc(x / a)
    out[np.abs(x) >= a] = 0.0
    return out


@dataclass(frozen=True)
class Kernel:
    name: str
    radius: int
    fn: Callable[[np.ndarray], np.ndarray]

    @property
    def taps(self) -> int:
        return 2 * self.radius


BICUBIC_KERNEL = Kernel("bicubic", 2, cubic_kernel)
LANCZOS3_KERNEL = Kernel("lanczos3", 3, lambda x: lanczos_kernel(x, 3))
LANCZOS4_KERNEL = Kernel("lanczos4", 4, lambda x: lanczos_kernel(x, 4))


def axis_weights(dst_positions: np.ndarray, src_len: int, dst_len: int, kernel: Kernel) -> Tuple[np.ndarray, np.ndarray]:
    """
    Source indices and normalised weights, shape (len(dst_positions), taps).

    Mapping is ``src = dst * src_len / dst_len`` so destination pixels that sit
    on a source sample reproduce it exactly.
    """
    scale = src_len / float(dst_len)
    s = dst_positions.astype(np.float64) * scale
    base = np.floor(s).astype(np.int64)
    offsets = np.arange(1 - kernel.radius, kernel.radius + 1, dtype=np.int64)
    idx = base[:, None] + offsets[None, :]

    weights = kernel.fn(s[:, None] - idx)
    valid = (idx >= 0) & (idx < src_len)
    weights = np.where(valid, weights, 0.0)

    sums = weights.sum(axis=1)
    degenerate = np.abs(sums) < WEIGHT_EPS
    if degenerate.any():
        # Nothing usable around this sample: take the nearest source pixel
        centre = int(np.where(offsets == 0)[0][0])
        weights[degenerate] = 0.0
        weights[degenerate, centre] = 1.0
        sums[degenerate] = 1.0
    weights /= sums[:, None]

    idx = np.clip(idx, 0, src_len - 1)
    return idx, weights.astype(np.float32)


def _separable_pass(window: np.ndarray, ix: np.ndarray, wx: np.ndarray, iy: np.ndarray, wy: np.ndarray) -> np.ndarray:
    """Horizontal then vertical weighted sums over a float32 (h, w, c) window."""
    tmp = np.zeros((window.shape[0], ix.shape[0], window.shape[2]), dtype=np.float32)
    for k in range(ix.shape[1]):
        tmp += window[:, ix[:, k], :] * wx[None, :, k, None]
    out = np.zeros((iy.shape[0], ix.shape[0], window.shape[2]), dtype=np.float32)
    for k in range(iy.shape[1]):
        out += tmp[iy[:, k], :, :] * wy[:, k, None, None]
    return out


def _check_dimensions(src_w: int, src_h: int, dst_w: int, dst_h: int) -> None:
    if src_w <= 0 or src_h <= 0 or dst_w <= 0 or dst_h <= 0:
        raise InvalidDimensionsError(
            f"Cannot resample {src_w}x{src_h} to {dst_w}x{dst_h}", width=dst_w, height=dst_h
        )


def kernel_resample(
    pixels: np.ndarray,
    dst_w: int,
    dst_h: int,
    kernel: Kernel = BICUBIC_KERNEL,
    governor: Optional[ChunkGovernor] = None,
    chunk_size: int = 0,
    overlap: int = TILE_OVERLAP,
) -> np.ndarray:
    """
    Resample an (H, W, C) uint8 array to (dst_h, dst_w, C).

    With ``chunk_size > 0`` the destination is processed tile by tile; each tile
    reads a source window padded by ``overlap`` pixels and uses global
    coordinates, so tiles join without seams.
    """
    src_h, src_w = pixels.shape[:2]
    _check_dimensions(src_w, src_h, dst_w, dst_h)
    governor = governor or ChunkGovernor()

    out = np.empty((dst_h, dst_w, pixels.shape[2]), dtype=np.uint8)
    tiles = tile_grid(dst_w, dst_h, chunk_size) if chunk_size > 0 else [(0, 0, dst_w, dst_h)]

    for (x1, y1, x2, y2) in governor.iterate(tiles, label=f"{kernel.name} tiles"):
        ix, wx = axis_weights(np.arange(x1, x2), src_w, dst_w, kernel)
        iy, wy = axis_weights(np.arange(y1, y2), src_h, dst_h, kernel)

        sx0 = max(0, int(ix.min()) - overlap)
        sx1 = min(src_w, int(ix.max()) + 1 + overlap)
        sy0 = max(0, int(iy.min()) - overlap)
        sy1 = min(src_h, int(iy.max()) + 1 + overlap)

        window = pixels[sy0:sy1, sx0:sx1].astype(np.float32)
        nbytes = window.nbytes + (sy1 - sy0) * (x2 - x1) * pixels.shape[2] * 4 * 2
        governor.reserve(nbytes, label=f"{kernel.name} tile")
        try:
            tile = _separable_pass(window, ix - sx0, wx, iy - sy0, wy)
            out[y1:y2, x1:x2] = np.clip(np.rint(tile), 0, 255).astype(np.uint8)
        finally:
            governor.release(nbytes)
    return out


def nearest_resample(pixels: np.ndarray, dst_w: int, dst_h: int) -> np.ndarray:
    src_h, src_w = pixels.shape[:2]
    _check_dimensions(src_w, src_h, dst_w, dst_h)
    ix = np.minimum((np.arange(dst_w) * (src_w / float(dst_w))).astype(np.int64), src_w - 1)
    iy = np.minimum((np.arange(dst_h) * (src_h / float(dst_h))).astype(np.int64), src_h - 1)
    return np.ascontiguousarray(pixels[iy][:, ix])


# ---------------------------------------------
# B-spline interpolation
# ---------------------------------------------

def bspline_resize_channel(channel: np.ndarray, new_w: int, new_h: int, order: int = 3) -> np.ndarray:
    h, w = channel.shape
    y = np.arange(h)
    x = np.arange(w)
    spline = RectBivariateSpline(y, x, channel.astype(np.float64), kx=order, ky=order, s=0.0)

    y_new = np.linspace(0.0, float(h - 1), new_h)
    x_new = np.linspace(0.0, float(w - 1), new_w)
    return spline(y_new, x_new).astype(np.float32)


def bspline_resize(pixels: np.ndarray, new_w: int, new_h: int, order: int = 3,
                   governor: Optional[ChunkGovernor] = None) -> np.ndarray:
    governor = governor or ChunkGovernor()
    channels = []
    for c in governor.iterate(range(pixels.shape[2]), label="bspline channels"):
        channels.append(bspline_resize_channel(pixels[:, :, c], new_w, new_h, order=order))
    out = np.stack(channels, axis=2)
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


# ---------------------------------------------
# Hybrid refinement
# ---------------------------------------------

def hybrid_blend(high: np.ndarray, low: np.ndarray, beta: float = 2.0) -> np.ndarray:
    """
    Edge-energy weighted blend: the primary (``high``) result wins on edges,
    the smoother secondary result in flat areas.
    """
    gray = luminance(high[..., :3]) / 255.0
    energy = compute_local_energy(gray)
    e_norm = energy / (energy.max() + 1e-6)
    w = np.clip(e_norm ** beta, 0.0, 1.0)[..., None]
    out = w * high.astype(np.float32) + (1.0 - w) * low.astype(np.float32)
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


# ---------------------------------------------
# Algorithm variants
# ---------------------------------------------

class ResamplingAlgorithm(ABC):
    name: str = ""

    @abstractmethod
    def apply(self, buffer: RasterBuffer, plan: ProcessingPlan, governor: ChunkGovernor) -> RasterBuffer:
        raise NotImplementedError

    @staticmethod
    def _target(buffer: RasterBuffer, plan: ProcessingPlan) -> Tuple[int, int]:
        dst_w, dst_h = plan.working_dimensions
        _check_dimensions(buffer.width, buffer.height, dst_w, dst_h)
        return dst_w, dst_h


class NearestResampler(ResamplingAlgorithm):
    name = "nearest"

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        out = nearest_resample(buffer.pixels, dst_w, dst_h)
        governor.checkpoint(self.name)
        return buffer.with_pixels(out)


class KernelResampler(ResamplingAlgorithm):
    def __init__(self, kernel: Kernel):
        self.kernel = kernel
        self.name = kernel.name

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        out = kernel_resample(buffer.pixels, dst_w, dst_h, self.kernel, governor, plan.chunk_size)
        return buffer.with_pixels(out)


class BSplineResampler(ResamplingAlgorithm):
    name = "bspline"

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        if buffer.width < 4 or buffer.height < 4:
            # Cubic splines need at least four samples per axis
            out = kernel_resample(buffer.pixels, dst_w, dst_h, BICUBIC_KERNEL, governor, plan.chunk_size)
        else:
            nbytes = governor.reserve_pixels(dst_w * dst_h, pass_multiplier=2.0, label=self.name)
            try:
                out = bspline_resize(buffer.pixels, dst_w, dst_h, governor=governor)
            finally:
                governor.release(nbytes)
        return buffer.with_pixels(out)


class ResidualResampler(ResamplingAlgorithm):
    """
    ESRGAN-like: above 2x, a 2x bicubic pass, a detail pass, then the rest of
    the way; the result gets a multi-scale residual detail boost.
    """
    name = "residual"

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        pixels = buffer.pixels
        scale = dst_w / float(buffer.width)
        if scale > 2.0:
            mid_w, mid_h = buffer.width * 2, buffer.height * 2
            pixels = kernel_resample(pixels, mid_w, mid_h, BICUBIC_KERNEL, governor, plan.chunk_size)
            pixels = _boost_rgb(pixels, levels=2, strength=0.2)
            governor.checkpoint("residual intermediate")
        out = kernel_resample(pixels, dst_w, dst_h, BICUBIC_KERNEL, governor, plan.chunk_size)
        out = _boost_rgb(out, levels=3, strength=0.15)
        return buffer.with_pixels(out)


class LineArtResampler(ResamplingAlgorithm):
    """waifu2x-like: nearest neighbour, then smoothing of non-edge pixels only."""
    name = "line_art"

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        out = nearest_resample(buffer.pixels, dst_w, dst_h)
        governor.checkpoint(self.name)

        grad = max_neighbor_gradient(out)
        rgb = out[..., :3].astype(np.float32)
        smoothed = cv2.blur(rgb, (3, 3), borderType=cv2.BORDER_REFLECT)
        flat = (grad <= LINE_ART_EDGE_GRADIENT)[..., None]
        candidate = np.where(flat, np.rint(smoothed), rgb)
        result = rgb.copy()
        write_interior(result, candidate, 1)
        out[..., :3] = np.clip(result, 0, 255).astype(np.uint8)
        return buffer.with_pixels(out)


class ArtifactReductionResampler(ResamplingAlgorithm):
    """Edge-preserving diffusion on the source to melt JPEG blocks, then Lanczos-3."""
    name = "artifact_reduction"

    def __init__(self, niter: int = 5, kappa: float = 0.08):
        self.niter = niter
        self.kappa = kappa

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        src = buffer.pixels.copy()
        rgb = to_float01(src[..., :3])
        src[..., :3] = from_float01(anisotropic_diffusion_color(rgb, niter=self.niter, kappa=self.kappa))
        governor.checkpoint("artifact diffusion")
        out = kernel_resample(src, dst_w, dst_h, LANCZOS3_KERNEL, governor, plan.chunk_size)
        return buffer.with_pixels(out)


class GeneralResampler(ResamplingAlgorithm):
    """SRCNN-like: bicubic (two sqrt(s) passes above 2x) then a 5x5 high-pass boost."""
    name = "general"

    def apply(self, buffer, plan, governor):
        dst_w, dst_h = self._target(buffer, plan)
        pixels = buffer.pixels
        scale = dst_w / float(buffer.width)
        if scale > 2.0:
            step = math.sqrt(scale)
            mid_w = max(1, int(math.floor(buffer.width * step)))
            mid_h = max(1, int(math.floor(buffer.height * step)))
            pixels = kernel_resample(pixels, mid_w, mid_h, BICUBIC_KERNEL, governor, plan.chunk_size)
        out = kernel_resample(pixels, dst_w, dst_h, BICUBIC_KERNEL, governor, plan.chunk_size)
        rgb = to_float01(out[..., :3])
        out[..., :3] = from_float01(high_pass_boost(rgb, radius=2, amount=0.5))
        return buffer.with_pixels(out)


def _boost_rgb(pixels: np.ndarray, levels: int, strength: float) -> np.ndarray:
    out = pixels.copy()
    out[..., :3] = from_float01(boost_details(to_float01(pixels[..., :3]), levels=levels, strength=strength))
    return out


ALGORITHMS: Dict[Algorithm, ResamplingAlgorithm] = {
    Algorithm.NEAREST: NearestResampler(),
    Algorithm.BICUBIC: KernelResampler(BICUBIC_KERNEL),
    Algorithm.LANCZOS3: KernelResampler(LANCZOS3_KERNEL),
    Algorithm.LANCZOS4: KernelResampler(LANCZOS4_KERNEL),
    Algorithm.BSPLINE: BSplineResampler(),
    Algorithm.RESIDUAL: ResidualResampler(),
    Algorithm.LINE_ART: LineArtResampler(),
    Algorithm.ARTIFACT_REDUCTION: ArtifactReductionResampler(),
    Algorithm.GENERAL: GeneralResampler(),
}

_missing = set(Algorithm) - {Algorithm.AUTO} - set(ALGORITHMS)
if _missing:
    raise RuntimeError(f"No resampler registered for {sorted(a.value for a in _missing)}")


def get_algorithm(algorithm: Algorithm) -> ResamplingAlgorithm:
    if algorithm is Algorithm.AUTO:
        raise ValueError("AUTO must be resolved by the planner before resampling")
    return ALGORITHMS[algorithm]


def resample(buffer: RasterBuffer, plan: ProcessingPlan, governor: Optional[ChunkGovernor] = None) -> RasterBuffer:
    """Primary pass, plus the hybrid refinement blend when the plan has a secondary."""
    governor = governor or ChunkGovernor()
    logger.info(
        "Resampling %dx%d -> %dx%d with %s",
        buffer.width, buffer.height, plan.working_dimensions[0], plan.working_dimensions[1],
        plan.primary_algorithm.value,
    )
    primary = get_algorithm(plan.primary_algorithm).apply(buffer, plan, governor)
    if plan.secondary_algorithm is None:
        return primary

    secondary = get_algorithm(plan.secondary_algorithm).apply(buffer, plan, governor)
    governor.checkpoint("hybrid blend")
    return primary.with_pixels(hybrid_blend(primary.pixels, secondary.pixels))


def resize_pixels(pixels: np.ndarray, dst_w: int, dst_h: int, kernel: Kernel = BICUBIC_KERNEL,
                  governor: Optional[ChunkGovernor] = None) -> np.ndarray:
    """Plain kernel resize of an (H, W) or (H, W, C) uint8 array."""
    squeeze = pixels.ndim == 2
    arr = pixels[..., None] if squeeze else pixels
    out = kernel_resample(arr, dst_w, dst_h, kernel, governor)
    return out[..., 0] if squeeze else out
