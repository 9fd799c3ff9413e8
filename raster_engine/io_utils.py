from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import numpy as np
import cv2

from .buffer import RasterBuffer
from .config import MAX_INPUT_BYTES, SUPPORTED_MIME_TYPES
from .constants import OutputFormat
from .errors import DecodeError, EncodeError, InputTooLargeError, UnsupportedFormatError
from .log import get_logger

logger = get_logger(__name__)

SUPPORTED_EXTS = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"}

MIME_BY_EXT = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".webp": "image/webp",
}

OUTPUT_SUFFIX = {
    "upscale": "_upscaled",
    "remove-bg": "_nobg",
}


# -----------------------------
# Files / paths
# -----------------------------

def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def is_image_file(p: Path) -> bool:
    return p.is_file() and (p.suffix.lower() in SUPPORTED_EXTS)


def discover_images(root: Path) -> List[Path]:
    images: List[Path] = []
    for ext in sorted(SUPPORTED_EXTS):
        images.extend(root.rglob(f"*{ext}"))
        images.extend(root.rglob(f"*{ext.upper()}"))
    # Deduplicate preserving order (case-insensitive filesystems match twice)
    seen = set()
    uniq: List[Path] = []
    for p in images:
        if p not in seen:
            uniq.append(p)
            seen.add(p)
    return uniq


def make_output_path(
    inp: Path,
    input_root: Path,
    output_dir: Path,
    keep_structure: bool,
    mode: str = "upscale",
    output_format: OutputFormat = OutputFormat.PNG,
) -> Path:
    out_name = inp.stem + OUTPUT_SUFFIX.get(mode, "_out") + output_format.extension
    if keep_structure:
        try:
            rel = inp.parent.relative_to(input_root)
        except ValueError:
            rel = Path(".")
        return output_dir / rel / out_name
    return output_dir / out_name


def mime_type_for(path: Path) -> str:
    return MIME_BY_EXT.get(path.suffix.lower(), "application/octet-stream")


# -----------------------------
# Guards
# -----------------------------

def check_input(data: bytes, mime_type: str, max_bytes: int = MAX_INPUT_BYTES) -> None:
    """Size and MIME checks, run before anything is decoded."""
    if len(data) > max_bytes:
        raise InputTooLargeError(
            f"Input is {len(data) / (1024 * 1024):.1f}MB, limit is {max_bytes / (1024 * 1024):.0f}MB",
            size_bytes=len(data),
            limit_bytes=max_bytes,
        )
    mime = (mime_type or "").strip().lower()
    if mime not in SUPPORTED_MIME_TYPES:
        raise UnsupportedFormatError(f"Unsupported input type: {mime_type!r}", format_name=mime_type)


# -----------------------------
# Codec
# -----------------------------

def decode_image(data: bytes) -> RasterBuffer:
    """Decode encoded bytes into an RGBA8 buffer (alpha kept when present)."""
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED) if arr.size else None
    if img is None:
        raise DecodeError("Could not decode image data")

    if img.dtype != np.uint8:
        # 16-bit PNG / TIFF
        img = (img.astype(np.float32) / 257.0).round().clip(0, 255).astype(np.uint8)

    if img.ndim == 2:
        rgba = cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
    elif img.shape[2] == 3:
        rgba = cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
    elif img.shape[2] == 4:
        rgba = cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
    else:
        raise DecodeError(f"Unsupported channel count: {img.shape[2]}")
    return RasterBuffer.from_array(rgba)


def encode_image(buffer: RasterBuffer, output_format: OutputFormat = OutputFormat.PNG, quality: int = 95) -> bytes:
    """Encode to PNG / WebP (with alpha) or JPEG (alpha dropped)."""
    output_format = OutputFormat.parse(output_format)
    quality = int(min(100, max(0, quality)))
    if output_format is OutputFormat.JPEG:
        img = cv2.cvtColor(buffer.pixels, cv2.COLOR_RGBA2BGR)
        params = [cv2.IMWRITE_JPEG_QUALITY, quality]
    elif output_format is OutputFormat.WEBP:
        img = cv2.cvtColor(buffer.pixels, cv2.COLOR_RGBA2BGRA)
        params = [cv2.IMWRITE_WEBP_QUALITY, max(1, quality)]
    else:
        img = cv2.cvtColor(buffer.pixels, cv2.COLOR_RGBA2BGRA)
        params = [cv2.IMWRITE_PNG_COMPRESSION, 6]

    ok, encoded = cv2.imencode(output_format.extension, img, params)
    if not ok:
        raise EncodeError(f"Encoding to {output_format.value} failed")
    return encoded.tobytes()


def load_image_file(path: Path, max_bytes: Optional[int] = None) -> bytes:
    """Read a file, refusing it from its size on disk when over ``max_bytes``."""
    path = Path(path)
    if max_bytes is not None:
        size = path.stat().st_size
        if size > max_bytes:
            raise InputTooLargeError(
                f"{path.name} is {size / (1024 * 1024):.1f}MB, limit is {max_bytes / (1024 * 1024):.0f}MB",
                size_bytes=size,
                limit_bytes=max_bytes,
            )
    with path.open("rb") as f:
        return f.read()


def save_image(path: Path, data: bytes) -> None:
    ensure_dir(path.parent)
    with path.open("wb") as f:
        f.write(data)
    logger.debug("Wrote %s (%d bytes)", path, len(data))
