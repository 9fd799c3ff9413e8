from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import InvalidDimensionsError


@dataclass
class RasterBuffer:
    """
    RGBA8 pixels shared between every stage.

    pixels: np.ndarray  # Shape (H, W, 4), dtype uint8, RGBA order, C-contiguous.
    A stage either mutates ``pixels`` in place or returns a new buffer; it never
    keeps a reference after returning.
    """
    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise InvalidDimensionsError(
                f"Invalid raster dimensions {self.width}x{self.height}",
                width=self.width, height=self.height,
            )
        if self.pixels.shape != (self.height, self.width, 4) or self.pixels.dtype != np.uint8:
            raise InvalidDimensionsError(
                f"Pixel array {self.pixels.shape}/{self.pixels.dtype} does not match "
                f"{self.width}x{self.height} RGBA8",
                width=self.width, height=self.height,
            )
        if not self.pixels.flags["C_CONTIGUOUS"]:
            self.pixels = np.ascontiguousarray(self.pixels)

    # ── Constructors ────────────────────────────────────────────────
    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterBuffer":
        """Accepts gray (H, W), RGB (H, W, 3) or RGBA (H, W, 4) uint8 arrays."""
        arr = np.asarray(array)
        if arr.ndim == 2:
            arr = np.stack([arr, arr, arr], axis=-1)
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise InvalidDimensionsError(f"Unsupported pixel array shape {arr.shape}")
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        h, w = arr.shape[:2]
        if arr.shape[2] == 3:
            alpha = np.full((h, w, 1), 255, dtype=np.uint8)
            arr = np.concatenate([arr, alpha], axis=-1)
        return cls(width=w, height=h, pixels=np.ascontiguousarray(arr))

    @classmethod
    def from_rgb(cls, width: int, height: int, data: bytes) -> "RasterBuffer":
        """Interleaved RGB8 bytes → opaque RGBA buffer."""
        if width <= 0 or height <= 0 or len(data) != width * height * 3:
            raise InvalidDimensionsError(
                f"{len(data)} bytes do not describe a {width}x{height} RGB raster",
                width=width, height=height,
            )
        return cls.from_array(np.frombuffer(data, dtype=np.uint8).reshape(height, width, 3))

    @classmethod
    def solid(cls, width: int, height: int, rgba=(0, 0, 0, 255)) -> "RasterBuffer":
        if width <= 0 or height <= 0:
            raise InvalidDimensionsError(
                f"Invalid raster dimensions {width}x{height}", width=width, height=height
            )
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[...] = np.asarray(rgba, dtype=np.uint8)
        return cls(width=width, height=height, pixels=pixels)

    # ── Views / helpers ─────────────────────────────────────────────
    @property
    def dimensions(self):
        return self.width, self.height

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def nbytes(self) -> int:
        return int(self.pixels.nbytes)

    def rgb(self) -> np.ndarray:
        """(H, W, 3) view on the colour channels."""
        return self.pixels[..., :3]

    def alpha(self) -> np.ndarray:
        """(H, W) view on the alpha channel."""
        return self.pixels[..., 3]

    def copy(self) -> "RasterBuffer":
        return RasterBuffer(self.width, self.height, self.pixels.copy())

    def with_pixels(self, pixels: np.ndarray) -> "RasterBuffer":
        """New buffer from an (H, W, 4) array, dimensions taken from the array."""
        h, w = pixels.shape[:2]
        return RasterBuffer(w, h, pixels)


def to_float01(pixels: np.ndarray) -> np.ndarray:
    return pixels.astype(np.float32) / 255.0


def from_float01(image: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(image * 255.0), 0, 255).astype(np.uint8)


def empty_mask(width: int, height: int, value: int = 0) -> np.ndarray:
    """Background-probability mask, one byte per pixel (255 = background)."""
    return np.full((height, width), value, dtype=np.uint8)
