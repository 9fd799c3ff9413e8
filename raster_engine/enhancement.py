"""
Post-resample enhancement: detail boost, noise reduction, sharpening and
colour/contrast, each switchable on its own.

All steps work on float RGB in [0, 1]; alpha is never touched. Neighbourhood
filters only write the interior of the image, the outer frame keeps the
resampled values.
"""

from __future__ import annotations

from typing import Optional, Union

import numpy as np

from .analysis import ContentAnalysis
from .buffer import RasterBuffer, from_float01, to_float01
from .config import EnhanceOptions, UpscaleOptions
from .constants import ContentType
from .filters import (
    bilateral,
    box_mean,
    build_gaussian_pyramid,
    build_laplacian_pyramid,
    gaussian_blur,
    guided_filter,
    luminance,
    reconstruct_from_laplacian,
    write_interior,
)
from .log import get_logger

logger = get_logger(__name__)

# Blend weight of the boosted detail layer per content type
DETAIL_BLEND = {
    ContentType.ART: 0.3,
    ContentType.TEXT: 0.2,
    ContentType.MIXED: 0.2,
    ContentType.PHOTO: 0.1,
}
DETAIL_LEVELS = 3
PYRAMID_BORDER = 2

NOISE_BLEND = 0.3
BILATERAL_RADIUS = 2
BILATERAL_SIGMA_SPACE = 2.0
BILATERAL_SIGMA_COLOR = 20.0 / 255.0

SHARPEN_SIGMA = 1.0
SHARPEN_BORDER = 3

SATURATION_GAIN = 1.05


# ---------------------------------------------
# Building blocks (also used by the resamplers)
# ---------------------------------------------

def boost_details(rgb: np.ndarray, levels: int = DETAIL_LEVELS, strength: float = 0.15) -> np.ndarray:
    """
    Amplify the high-frequency Laplacian bands, finer bands more.
    Flat regions have empty bands and come back unchanged.
    """
    gaussian = build_gaussian_pyramid(rgb, levels=levels)
    bands = build_laplacian_pyramid(gaussian)
    n = len(bands) - 1
    for i in range(n):
        bands[i] = bands[i] * (1.0 + strength * (n - i) / float(max(n, 1)))
    boosted = np.clip(reconstruct_from_laplacian(bands), 0.0, 1.0)
    out = rgb.astype(np.float32).copy()
    write_interior(out, boosted, PYRAMID_BORDER)
    return out


def high_pass_boost(rgb: np.ndarray, radius: int = 2, amount: float = 0.5) -> np.ndarray:
    """x + amount * (x - mean_(2r+1)^2(x)), interior only."""
    rgb = rgb.astype(np.float32)
    boosted = np.clip(rgb + amount * (rgb - box_mean(rgb, radius)), 0.0, 1.0)
    out = rgb.copy()
    write_interior(out, boosted, radius)
    return out


def _blend_interior(base: np.ndarray, other: np.ndarray, weight: float, border: int) -> np.ndarray:
    mixed = base * (1.0 - weight) + other * weight
    out = base.copy()
    write_interior(out, mixed, border)
    return out


# ---------------------------------------------
# Steps
# ---------------------------------------------

def enhance_details(rgb: np.ndarray, content_type: ContentType) -> np.ndarray:
    boosted = boost_details(rgb, levels=DETAIL_LEVELS, strength=1.0)
    return _blend_interior(rgb, boosted, DETAIL_BLEND.get(content_type, 0.2), PYRAMID_BORDER)


def reduce_noise(rgb: np.ndarray, guide: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Edge-preserving smoothing blended in at 30 %.
    With a guide image (float RGB, same size) a joint guided filter is used.
    """
    if guide is not None:
        filtered = guided_filter(luminance(guide), rgb, radius=BILATERAL_RADIUS, eps=1e-3)
    else:
        filtered = bilateral(rgb, BILATERAL_RADIUS, BILATERAL_SIGMA_COLOR, BILATERAL_SIGMA_SPACE)
    return _blend_interior(rgb, np.clip(filtered, 0.0, 1.0), NOISE_BLEND, BILATERAL_RADIUS)


def adaptive_sharpen_amount(sharpen_amount: float, edge_density: float, content_type: ContentType) -> float:
    amount = sharpen_amount / 100.0
    if edge_density > 0.3:
        amount *= 0.7
    elif edge_density < 0.1:
        amount *= 1.3
    if content_type is ContentType.TEXT:
        amount *= 0.5
    return amount


def sharpen(rgb: np.ndarray, amount: float) -> np.ndarray:
    """Unsharp mask: orig + (orig - gauss(orig)) * amount."""
    blurred = gaussian_blur(rgb, SHARPEN_SIGMA)
    sharp = np.clip(rgb + (rgb - blurred) * amount, 0.0, 1.0)
    out = rgb.copy()
    write_interior(out, sharp, SHARPEN_BORDER)
    return out


def boost_saturation(rgb: np.ndarray, gain: float = SATURATION_GAIN) -> np.ndarray:
    gray = luminance(rgb)[..., None]
    return np.clip(gray + (rgb - gray) * gain, 0.0, 1.0)


def boost_contrast(rgb: np.ndarray, amount: float) -> np.ndarray:
    """Midtone-weighted stretch around 0.5; pure black and white stay put."""
    weight = 4.0 * rgb * (1.0 - rgb)
    return np.clip(rgb + amount * (rgb - 0.5) * weight, 0.0, 1.0)


# ---------------------------------------------
# Pipeline
# ---------------------------------------------

def enhance(
    buffer: RasterBuffer,
    analysis: Optional[ContentAnalysis],
    options: Union[EnhanceOptions, UpscaleOptions, None] = None,
    guide: Optional[RasterBuffer] = None,
) -> RasterBuffer:
    """
    Run the enabled enhancement steps in order and return a new buffer
    (or ``buffer`` itself when nothing is enabled).
    """
    if options is None:
        options = EnhanceOptions()
    elif isinstance(options, UpscaleOptions):
        options = EnhanceOptions.from_upscale(options)

    content_type = analysis.content_type if analysis is not None else ContentType.MIXED
    edge_density = analysis.edge_density if analysis is not None else 0.2

    steps = []
    if options.enhance_details:
        steps.append("details")
    if options.reduce_noise:
        steps.append("denoise")
    if options.sharpen_amount > 0:
        steps.append("sharpen")
    if options.color_enhancement or options.contrast_boost > 0:
        steps.append("color")
    if not steps:
        return buffer

    logger.debug("Enhancement steps: %s (content=%s)", ", ".join(steps), content_type.value)
    rgb = to_float01(buffer.rgb())

    if options.enhance_details:
        rgb = enhance_details(rgb, content_type)

    if options.reduce_noise:
        guide_rgb = None
        if guide is not None and guide.dimensions == buffer.dimensions:
            guide_rgb = to_float01(guide.rgb())
        rgb = reduce_noise(rgb, guide_rgb)

    if options.sharpen_amount > 0:
        amount = adaptive_sharpen_amount(options.sharpen_amount, edge_density, content_type)
        rgb = sharpen(rgb, amount)

    if options.color_enhancement:
        rgb = boost_saturation(rgb)
    if options.contrast_boost > 0:
        rgb = boost_contrast(rgb, options.contrast_boost / 100.0)

    out = buffer.pixels.copy()
    out[..., :3] = from_float01(rgb)
    return buffer.with_pixels(out)
