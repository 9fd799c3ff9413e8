"""
Chunk & memory governor.

Wraps per-tile / per-stage loops with a running memory estimate, a hard
ceiling, a cancellation check and a cooperative yield point. One governor per
pipeline run; nothing here is shared between runs.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, TypeVar

from .config import ResourceBudget, TILE_SIZE, WORKING_BYTES_PER_PIXEL
from .errors import MemoryLimitExceededError, OperationCancelledError
from .log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
Tile = Tuple[int, int, int, int]  # (x1, y1, x2, y2), x2/y2 exclusive


def estimate_bytes(pixel_count: int, bytes_per_pixel: int = WORKING_BYTES_PER_PIXEL, pass_multiplier: float = 1.0) -> int:
    """estimatedBytes = pixelCount * bytesPerPixel * passMultiplier"""
    return int(pixel_count * bytes_per_pixel * pass_multiplier)


def tile_grid(width: int, height: int, tile_size: int = TILE_SIZE) -> List[Tile]:
    """Non-overlapping tiles covering a width x height area, row-major."""
    if tile_size <= 0 or (width <= tile_size and height <= tile_size):
        return [(0, 0, width, height)]
    tiles = []
    for y1 in range(0, height, tile_size):
        for x1 in range(0, width, tile_size):
            tiles.append((x1, y1, min(width, x1 + tile_size), min(height, y1 + tile_size)))
    return tiles


class ChunkGovernor:
    """
    Running memory estimate + cooperative scheduling for one pipeline run.

    Args:
        budget: resource budget injected by the host
        cancel_event: optional token, checked at every yield point
        yield_fn: called at every checkpoint; ``time.sleep(0)`` releases the
            GIL so sibling workers and the host thread get scheduled
    """

    def __init__(
        self,
        budget: Optional[ResourceBudget] = None,
        cancel_event: Optional[threading.Event] = None,
        yield_fn: Optional[Callable[[], None]] = None,
    ):
        self.budget = budget or ResourceBudget()
        self.cancel_event = cancel_event
        self._yield = yield_fn or (lambda: time.sleep(0))
        self.current_bytes = 0
        self.peak_bytes = 0
        self.checkpoints = 0

    @property
    def limit_bytes(self) -> int:
        return self.budget.max_bytes

    # ── Memory accounting ──────────────────────────────────────────
    def reserve(self, nbytes: int, label: str = "") -> None:
        """Add to the running estimate; aborts when the ceiling is crossed."""
        self.current_bytes += int(nbytes)
        self.peak_bytes = max(self.peak_bytes, self.current_bytes)
        self._check_ceiling(label)

    def release(self, nbytes: int) -> None:
        self.current_bytes = max(0, self.current_bytes - int(nbytes))

    def reserve_pixels(self, pixel_count: int, pass_multiplier: float = 1.0, label: str = "") -> int:
        nbytes = estimate_bytes(pixel_count, pass_multiplier=pass_multiplier)
        self.reserve(nbytes, label)
        return nbytes

    def _check_ceiling(self, label: str = "") -> None:
        if self.current_bytes > self.limit_bytes:
            logger.warning(
                "Memory estimate %.1f MB over limit %.1f MB (%s)",
                self.current_bytes / 1e6, self.limit_bytes / 1e6, label or "run",
            )
            raise MemoryLimitExceededError(
                f"Estimated memory {self.current_bytes / (1024 * 1024):.1f}MB exceeds "
                f"limit {self.limit_bytes / (1024 * 1024):.1f}MB"
                + (f" during {label}" if label else ""),
                estimated_bytes=self.current_bytes,
                limit_bytes=self.limit_bytes,
            )

    # ── Scheduling ─────────────────────────────────────────────────
    def checkpoint(self, label: str = "") -> None:
        """Yield point between chunks: ceiling check, cancellation, yield."""
        self._check_ceiling(label)
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelledError(f"Operation cancelled{' during ' + label if label else ''}")
        self.checkpoints += 1
        self._yield()

    def iterate(self, chunks: Iterable[T], label: str = "") -> Iterator[T]:
        """Yield each chunk, running a checkpoint after it has been processed."""
        for chunk in chunks:
            yield chunk
            self.checkpoint(label)

    def tiles(self, width: int, height: int, tile_size: int = TILE_SIZE, label: str = "") -> Iterator[Tile]:
        return self.iterate(tile_grid(width, height, tile_size), label)
