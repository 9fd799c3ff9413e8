"""
Low-level numeric filters shared by the resampling, enhancement and
segmentation stages.

Float images are float32 in [0, 1] (RGB or single channel) unless stated
otherwise; uint8 helpers say so in their name or docstring.
"""

from __future__ import annotations

from typing import List

import numpy as np
import cv2

NEIGHBOUR_OFFSETS = [(-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1)]


# ---------------------------------------------
# Colour / gradient helpers
# ---------------------------------------------

def luminance(rgb: np.ndarray) -> np.ndarray:
    """Rec.601 luma, same range as the input (uint8 input → 0..255 float32)."""
    rgb = rgb.astype(np.float32)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


def max_neighbor_gradient(rgb_u8: np.ndarray) -> np.ndarray:
    """
    For each pixel, max over its 8 neighbours of |dR|+|dG|+|dB| (uint8 input).
    Border pixels only compare against in-image neighbours.
    """
    img = rgb_u8[..., :3].astype(np.int16)
    h, w = img.shape[:2]
    padded = np.pad(img, ((1, 1), (1, 1), (0, 0)), mode="edge")
    out = np.zeros((h, w), dtype=np.int16)
    for dy, dx in NEIGHBOUR_OFFSETS:
        shifted = padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
        diff = np.abs(img - shifted).sum(axis=2)
        np.maximum(out, diff, out=out)
    return out


def compute_local_energy(gray: np.ndarray) -> np.ndarray:
    """Sobel magnitude, lightly smoothed (float32 gray input)."""
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    mag = np.sqrt(gx * gx + gy * gy)
    mag = cv2.GaussianBlur(mag, (3, 3), 0)
    return mag


def write_interior(dst: np.ndarray, src: np.ndarray, border: int) -> None:
    """Copy ``src`` into ``dst`` except for a ``border``-pixel frame."""
    h, w = dst.shape[:2]
    if border <= 0:
        dst[...] = src
        return
    if h <= 2 * border or w <= 2 * border:
        return
    dst[border:h - border, border:w - border] = src[border:h - border, border:w - border]


# ---------------------------------------------
# Smoothing
# ---------------------------------------------

def gaussian_blur(image: np.ndarray, sigma: float) -> np.ndarray:
    return cv2.GaussianBlur(image, (0, 0), sigmaX=sigma, sigmaY=sigma, borderType=cv2.BORDER_REFLECT)


def bilateral(image: np.ndarray, radius: int = 2, sigma_color: float = 20.0 / 255.0, sigma_space: float = 2.0) -> np.ndarray:
    """Spatial Gaussian x colour-similarity Gaussian, per channel (float32)."""
    return cv2.bilateralFilter(image.astype(np.float32), 2 * radius + 1, sigma_color, sigma_space)


def box_mean(image: np.ndarray, radius: int) -> np.ndarray:
    k = 2 * radius + 1
    return cv2.boxFilter(image, cv2.CV_32F, (k, k), normalize=True, borderType=cv2.BORDER_REFLECT)


def guided_filter(guide: np.ndarray, src: np.ndarray, radius: int = 4, eps: float = 1e-3) -> np.ndarray:
    """
    Gray-guided filter: local linear regression of ``src`` against ``guide``
    in a (2r+1)^2 window. Multi-channel sources are filtered per channel.
    """
    guide = guide.astype(np.float32)
    if src.ndim == 3:
        return np.stack(
            [guided_filter(guide, src[..., c], radius, eps) for c in range(src.shape[2])], axis=-1
        )
    src = src.astype(np.float32)

    mean_guide = box_mean(guide, radius)
    mean_src = box_mean(src, radius)
    mean_guide_src = box_mean(guide * src, radius)
    var_guide = box_mean(guide * guide, radius) - mean_guide * mean_guide
    cov_guide_src = mean_guide_src - mean_guide * mean_src

    a = cov_guide_src / (var_guide + eps)
    b = mean_src - a * mean_guide

    return box_mean(a, radius) * guide + box_mean(b, radius)


# ---------------------------------------------
# Anisotropic diffusion (Perona-Malik)
# ---------------------------------------------

def anisotropic_diffusion_gray(
    image: np.ndarray,
    niter: int = 10,
    kappa: float = 0.1,
    gamma: float = 0.15,
    option: int = 1,
) -> np.ndarray:
    """
    Perona-Malik diffusion on a single channel in [0, 1].
    - kappa: conduction threshold (gradient sensitivity)
    - gamma: time step (<= 0.25 for 2D stability)
    - option: 1 (exp) or 2 (1 / (1 + (g/kappa)^2))
    """
    img = image.astype(np.float32).copy()
    for _ in range(niter):
        north = np.zeros_like(img)
        south = np.zeros_like(img)
        east = np.zeros_like(img)
        west = np.zeros_like(img)

        # Differences towards each neighbour, zero flux across the border
        north[1:, :] = img[:-1, :] - img[1:, :]
        south[:-1, :] = img[1:, :] - img[:-1, :]
        east[:, :-1] = img[:, 1:] - img[:, :-1]
        west[:, 1:] = img[:, :-1] - img[:, 1:]

        if option == 1:
            cN = np.exp(-(north / kappa) ** 2.0)
            cS = np.exp(-(south / kappa) ** 2.0)
            cE = np.exp(-(east / kappa) ** 2.0)
            cW = np.exp(-(west / kappa) ** 2.0)
        else:
            cN = 1.0 / (1.0 + (north / kappa) ** 2.0)
            cS = 1.0 / (1.0 + (south / kappa) ** 2.0)
            cE = 1.0 / (1.0 + (east / kappa) ** 2.0)
            cW = 1.0 / (1.0 + (west / kappa) ** 2.0)

        img += gamma * (cN * north + cS * south + cE * east + cW * west)
    return np.clip(img, 0.0, 1.0)


def anisotropic_diffusion_color(
    image_rgb: np.ndarray,
    niter: int = 10,
    kappa: float = 0.1,
    gamma: float = 0.15,
    option: int = 1,
) -> np.ndarray:
    """Diffuse the Lab lightness only, so colours are not washed out."""
    img = np.clip(image_rgb.astype(np.float32), 0.0, 1.0)
    lab = cv2.cvtColor(img, cv2.COLOR_RGB2LAB)
    L, a, b = cv2.split(lab)

    L_f = anisotropic_diffusion_gray(L / 100.0, niter=niter, kappa=kappa, gamma=gamma, option=option) * 100.0

    lab_f = cv2.merge([L_f.astype(np.float32), a, b])
    return np.clip(cv2.cvtColor(lab_f, cv2.COLOR_LAB2RGB), 0.0, 1.0)


# ---------------------------------------------
# Gaussian / Laplacian pyramids
# ---------------------------------------------

def build_gaussian_pyramid(image: np.ndarray, levels: int = 4) -> List[np.ndarray]:
    pyramid = [image.astype(np.float32)]
    for _ in range(1, levels):
        h, w = pyramid[-1].shape[:2]
        if min(h, w) < 2:
            break
        pyramid.append(cv2.pyrDown(pyramid[-1]))
    return pyramid


def build_laplacian_pyramid(gaussian_pyr: List[np.ndarray]) -> List[np.ndarray]:
    lap_pyr = []
    for i in range(len(gaussian_pyr) - 1):
        current = gaussian_pyr[i]
        size = (current.shape[1], current.shape[0])
        up = cv2.pyrUp(gaussian_pyr[i + 1], dstsize=size)
        lap_pyr.append(current - up)
    lap_pyr.append(gaussian_pyr[-1])
    return lap_pyr


def reconstruct_from_laplacian(laplacian_pyr: List[np.ndarray]) -> np.ndarray:
    current = laplacian_pyr[-1]
    for level in range(len(laplacian_pyr) - 2, -1, -1):
        size = (laplacian_pyr[level].shape[1], laplacian_pyr[level].shape[0])
        current = cv2.pyrUp(current, dstsize=size) + laplacian_pyr[level]
    return current
