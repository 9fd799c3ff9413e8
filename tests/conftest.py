"""
Shared fixtures: synthetic rasters and encoded images.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Project root on the path so `raster_engine` and `pipeline` import without install
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from raster_engine.buffer import RasterBuffer
from raster_engine.constants import OutputFormat
from raster_engine.io_utils import encode_image


def make_square_image(size=100, square=50, fg=(0, 0, 255), bg=(255, 255, 255)):
    """Square of colour ``fg`` centred on a ``bg`` canvas."""
    arr = np.empty((size, size, 3), dtype=np.uint8)
    arr[...] = bg
    start = (size - square) // 2
    arr[start:start + square, start:start + square] = fg
    return RasterBuffer.from_array(arr), start


@pytest.fixture
def red_buffer():
    return RasterBuffer.solid(100, 100, (255, 0, 0, 255))


@pytest.fixture
def uniform_buffer():
    return RasterBuffer.solid(40, 40, (128, 128, 128, 255))


@pytest.fixture
def blue_square():
    """(buffer, start) with a 50x50 blue square at [start, start+50) on white 100x100."""
    return make_square_image()


@pytest.fixture
def noise_buffer():
    rng = np.random.default_rng(1234)
    arr = rng.integers(0, 256, size=(23, 37, 4), dtype=np.uint8)
    return RasterBuffer(37, 23, arr)


@pytest.fixture
def png_bytes():
    def _encode(buffer):
        return encode_image(buffer, OutputFormat.PNG)
    return _encode
