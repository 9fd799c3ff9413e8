"""
Background segmentation.

Edges + colour clusters decide where the background is, a flood fill from the
image border claims it, morphology and an edge-aware smoother clean the
result up, and a distance-based feather softens the cut.

Mask convention: uint8 (H, W), 0 = foreground, 255 = background.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import cv2
from scipy import ndimage

from .buffer import RasterBuffer
from .config import (
    BACKGROUND_SCORE_THRESHOLD,
    COLOR_GROW_BAND,
    COLOR_MATCH_DISTANCE,
    EDGE_SCALES,
    FLOOD_SEED_COUNT,
    GUIDED_EPS,
    GUIDED_RADIUS,
    KMEANS_CLUSTERS,
    KMEANS_EPSILON,
    KMEANS_ROUNDS,
    KMEANS_SAMPLE_STRIDE,
    MIN_KERNEL_FOOTPRINT,
    MIN_REGION_FRACTION,
    RELAXATION_ITERATIONS,
    SegmentationOptions,
)
from .constants import Refinement
from .filters import NEIGHBOUR_OFFSETS, gaussian_blur, guided_filter, luminance
from .governor import ChunkGovernor
from .log import get_logger

logger = get_logger(__name__)

# Largest 3x3 Sobel magnitude on 0..255 input: hypot(4*255, 4*255)
SOBEL_MAX = float(np.hypot(1020.0, 1020.0))
EIGHT_CONNECTED = np.ones((3, 3), dtype=bool)
FOUR_CONNECTED = ndimage.generate_binary_structure(2, 1)


def sensitivity_threshold(sensitivity: float) -> float:
    """Edge strength (0..1) a flood fill may not cross; higher sensitivity lets it cross more."""
    return 0.08 + 0.004 * float(min(100.0, max(0.0, sensitivity)))


# ---------------------------------------------
# Edges
# ---------------------------------------------

def edge_map(rgb: np.ndarray, scales=EDGE_SCALES) -> np.ndarray:
    """
    Multi-scale Sobel magnitude in [0, 1]. Scale i is pre-blurred with
    sigma = scale / 2 and weighted 1 / (i + 1).
    """
    gray = luminance(rgb)
    total = np.zeros(gray.shape, dtype=np.float32)
    weight_sum = 0.0
    for i, scale in enumerate(scales):
        blurred = gaussian_blur(gray, 0.5 * scale)
        gx = cv2.Sobel(blurred, cv2.CV_32F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
        gy = cv2.Sobel(blurred, cv2.CV_32F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
        w = 1.0 / (i + 1)
        total += w * np.sqrt(gx * gx + gy * gy)
        weight_sum += w
    return np.clip(total / (weight_sum * SOBEL_MAX), 0.0, 1.0)


# ---------------------------------------------
# Colour clustering
# ---------------------------------------------

def _border_pixels(rgb: np.ndarray) -> np.ndarray:
    h, w = rgb.shape[:2]
    ring = [rgb[0, :], rgb[h - 1, :], rgb[:, 0], rgb[:, w - 1]]
    return np.concatenate(ring, axis=0).reshape(-1, 3).astype(np.float32)


def _nearest(points: np.ndarray, centroids: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    d = np.linalg.norm(points[:, None, :] - centroids[None, :, :], axis=2)
    return d.argmin(axis=1), d.min(axis=1)


def kmeans_clusters(
    samples: np.ndarray,
    k: int = KMEANS_CLUSTERS,
    seed_point: Optional[np.ndarray] = None,
    rounds: int = KMEANS_ROUNDS,
    eps: float = KMEANS_EPSILON,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Lloyd iterations with farthest-point seeding.

    Returns (centroids (k, 3), labels for ``samples``). A cluster that loses
    all its members keeps its previous centroid.
    """
    samples = samples.astype(np.float32)
    first = samples[0] if seed_point is None else np.asarray(seed_point, dtype=np.float32)
    centroids = [first]
    dist = np.linalg.norm(samples - first, axis=1)
    for _ in range(1, k):
        nxt = samples[int(dist.argmax())]
        centroids.append(nxt)
        dist = np.minimum(dist, np.linalg.norm(samples - nxt, axis=1))
    centroids = np.stack(centroids).astype(np.float32)

    labels = np.zeros(len(samples), dtype=np.int64)
    for round_no in range(rounds):
        labels, _ = _nearest(samples, centroids)
        updated = centroids.copy()
        for c in range(k):
            members = samples[labels == c]
            if len(members):
                updated[c] = members.mean(axis=0)
        movement = float(np.abs(updated - centroids).max())
        centroids = updated
        if movement < eps:
            logger.debug("k-means converged after %d rounds", round_no + 1)
            break
    labels, _ = _nearest(samples, centroids)
    return centroids, labels


@dataclass(frozen=True)
class BackgroundCluster:
    index: int
    centroid: np.ndarray
    score: float
    border_ratio: float


def select_background_cluster(
    samples: np.ndarray,
    labels: np.ndarray,
    centroids: np.ndarray,
    border: np.ndarray,
) -> BackgroundCluster:
    """score = 0.5 * border presence + 0.3 * population + 0.2 * uniformity"""
    border_labels, _ = _nearest(border, centroids)
    best: Optional[BackgroundCluster] = None
    most_border: Optional[BackgroundCluster] = None
    for c in range(len(centroids)):
        members = samples[labels == c]
        border_ratio = float((border_labels == c).mean())
        population = len(members) / float(len(samples))
        if len(members):
            spread = float(np.linalg.norm(members - centroids[c], axis=1).mean())
            uniformity = 1.0 - min(1.0, spread / 64.0)
        else:
            uniformity = 0.0
        score = 0.5 * border_ratio + 0.3 * population + 0.2 * uniformity
        candidate = BackgroundCluster(c, centroids[c], score, border_ratio)
        if best is None or score > best.score:
            best = candidate
        if most_border is None or border_ratio > most_border.border_ratio:
            most_border = candidate
    if best.score > BACKGROUND_SCORE_THRESHOLD:
        return best
    return most_border


# ---------------------------------------------
# Flood fill
# ---------------------------------------------

def border_seeds(width: int, height: int, count: int = FLOOD_SEED_COUNT) -> List[Tuple[int, int]]:
    """Corners, edge midpoints and the top/bottom quarter points as (x, y)."""
    xs = [0, width // 4, width // 2, (3 * width) // 4, width - 1]
    ys = [0, height // 4, height // 2, (3 * height) // 4, height - 1]
    seeds = [(0, 0), (width - 1, 0), (0, height - 1), (width - 1, height - 1)]
    for x in xs[1:4]:
        seeds += [(x, 0), (x, height - 1)]
    for y in ys[2:3]:
        seeds += [(0, y), (width - 1, y)]
    # dedupe, keep order, for tiny images
    out = []
    for s in seeds:
        if s not in out:
            out.append(s)
    return out[:count]


def flood_fill_background(
    edges: np.ndarray,
    threshold: float,
    seeds: List[Tuple[int, int]],
    rgb: Optional[np.ndarray] = None,
    background_color: Optional[np.ndarray] = None,
    color_distance: float = COLOR_MATCH_DISTANCE,
    grow_band: int = COLOR_GROW_BAND,
) -> np.ndarray:
    """
    Boolean background region: 8-connected propagation from ``seeds`` through
    pixels whose edge value is below ``threshold``.

    When a background colour is given, the region then grows 4-connected
    through pixels close to that colour, but only within ``grow_band`` pixels
    of the edge-limited region. A one pixel stroke of another colour, even a
    diagonal one, cuts every 4-connected path, so the growth cannot leak
    across an outline into an enclosed area.
    """
    passable = edges < threshold
    start = np.zeros(edges.shape, dtype=bool)
    for x, y in seeds:
        if passable[y, x]:
            start[y, x] = True
    if not start.any():
        logger.debug("No passable border seed, background region is empty")
        return start

    region = ndimage.binary_propagation(start, structure=EIGHT_CONNECTED, mask=passable)

    if rgb is not None and background_color is not None and grow_band > 0:
        dist = np.linalg.norm(rgb.astype(np.float32) - background_color[None, None, :], axis=2)
        band = ndimage.binary_dilation(region, structure=FOUR_CONNECTED, iterations=grow_band)
        grow = region | (band & (dist < color_distance))
        region = ndimage.binary_propagation(region, structure=FOUR_CONNECTED, mask=grow)
    return region


# ---------------------------------------------
# Cleanup
# ---------------------------------------------

def refine_morphology(foreground: np.ndarray, radius: int) -> np.ndarray:
    """Closing then opening on a boolean foreground with an elliptical kernel."""
    if radius <= 0:
        return foreground
    size = 2 * radius + 1
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))
    fg = foreground.astype(np.uint8)
    fg = cv2.morphologyEx(fg, cv2.MORPH_CLOSE, kernel)
    fg = cv2.morphologyEx(fg, cv2.MORPH_OPEN, kernel)
    return fg.astype(bool)


def remove_small_regions(foreground: np.ndarray, min_fraction: float = MIN_REGION_FRACTION) -> np.ndarray:
    """Drop 8-connected foreground islands smaller than ``min_fraction`` of the image."""
    min_size = int(foreground.size * min_fraction)
    if min_size <= 1 or not foreground.any():
        return foreground
    labels, count = ndimage.label(foreground, structure=EIGHT_CONNECTED)
    sizes = np.bincount(labels.ravel(), minlength=count + 1)
    keep = sizes >= min_size
    keep[0] = False
    dropped = int(count - keep[1:].sum())
    if dropped:
        logger.debug("Removed %d foreground islands under %d px", dropped, min_size)
    return keep[labels]


def guided_refine(foreground: np.ndarray, rgb: np.ndarray,
                  radius: int = GUIDED_RADIUS, eps: float = GUIDED_EPS) -> np.ndarray:
    guide = luminance(rgb) / 255.0
    return np.clip(guided_filter(guide, foreground.astype(np.float32), radius, eps), 0.0, 1.0)


def relaxation_refine(foreground: np.ndarray, rgb: np.ndarray,
                      iterations: int = RELAXATION_ITERATIONS, sigma_color: float = 0.1) -> np.ndarray:
    """
    CRF-like relaxation: each pass replaces a pixel's probability by the
    average of its 3x3 neighbourhood weighted by distance and colour similarity.
    """
    guide = luminance(rgb) / 255.0
    h, w = guide.shape
    prob = foreground.astype(np.float32)
    g_pad = np.pad(guide, 1, mode="edge")
    for _ in range(iterations):
        p_pad = np.pad(prob, 1, mode="edge")
        acc = prob.copy()
        norm = np.ones_like(prob)
        for dy, dx in NEIGHBOUR_OFFSETS:
            g_nb = g_pad[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
            p_nb = p_pad[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
            weight = np.exp(-(dy * dy + dx * dx) / 2.0) * np.exp(-((guide - g_nb) ** 2) / (2.0 * sigma_color ** 2))
            acc += weight * p_nb
            norm += weight
        prob = acc / norm
    return np.clip(prob, 0.0, 1.0)


def feather(foreground: np.ndarray, radius: int) -> np.ndarray:
    """
    Alpha in [0, 1]: 1 on the foreground, ``1 - d/radius`` for background
    pixels within ``radius`` of it, 0 beyond.
    """
    if radius <= 0 or not foreground.any():
        return foreground.astype(np.float32)
    d = ndimage.distance_transform_edt(~foreground)
    alpha = np.clip(1.0 - d / float(radius), 0.0, 1.0).astype(np.float32)
    alpha[foreground] = 1.0
    return alpha


# ---------------------------------------------
# Pipeline
# ---------------------------------------------

def segment(
    buffer: RasterBuffer,
    options: Optional[SegmentationOptions] = None,
    governor: Optional[ChunkGovernor] = None,
) -> np.ndarray:
    """Background mask for ``buffer`` at its own resolution."""
    options = options or SegmentationOptions()
    governor = governor or ChunkGovernor()
    rgb = buffer.rgb()
    h, w = rgb.shape[:2]

    nbytes = governor.reserve_pixels(buffer.pixel_count, pass_multiplier=3.0, label="segmentation")
    try:
        edges = edge_map(rgb)
        governor.checkpoint("edge detection")

        samples = rgb[::KMEANS_SAMPLE_STRIDE, ::KMEANS_SAMPLE_STRIDE].reshape(-1, 3).astype(np.float32)
        border = _border_pixels(rgb)
        k = min(options.clusters, len(samples))
        centroids, labels = kmeans_clusters(samples, k=k, seed_point=border[0])
        background = select_background_cluster(samples, labels, centroids, border)
        logger.debug(
            "Background cluster %d colour=%s score=%.3f",
            background.index, np.round(background.centroid).astype(int).tolist(), background.score,
        )
        governor.checkpoint("color clustering")

        threshold = sensitivity_threshold(options.sensitivity)
        region = flood_fill_background(
            edges, threshold, border_seeds(w, h), rgb=rgb, background_color=background.centroid,
        )
        foreground = ~region
        governor.checkpoint("flood fill")

        small = min(w, h) < MIN_KERNEL_FOOTPRINT
        if not small:
            foreground = refine_morphology(foreground, options.morph_radius)
            foreground = remove_small_regions(foreground)
            governor.checkpoint("morphology")

            if options.refinement is Refinement.RELAXATION:
                prob = relaxation_refine(foreground, rgb)
            else:
                prob = guided_refine(foreground, rgb)
            foreground = prob >= 0.5
            governor.checkpoint("edge smoothing")

        if options.feather_edges:
            alpha = feather(foreground, options.feather_radius)
        else:
            alpha = foreground.astype(np.float32)
    finally:
        governor.release(nbytes)

    return (255 - np.clip(np.rint(alpha * 255.0), 0, 255)).astype(np.uint8)


def apply_mask(buffer: RasterBuffer, mask: np.ndarray) -> RasterBuffer:
    """New buffer whose alpha is ``255 - mask``; colour channels are kept."""
    if mask.shape != (buffer.height, buffer.width):
        mask = cv2.resize(mask, (buffer.width, buffer.height), interpolation=cv2.INTER_LINEAR)
    out = buffer.pixels.copy()
    out[..., 3] = 255 - mask
    return buffer.with_pixels(out)
