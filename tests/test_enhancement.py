"""
Enhancement pipeline.
"""

import numpy as np
import pytest

from raster_engine.analysis import ContentAnalysis
from raster_engine.buffer import RasterBuffer
from raster_engine.config import EnhanceOptions, UpscaleOptions
from raster_engine.constants import ContentType
from raster_engine.enhancement import (
    SHARPEN_BORDER,
    adaptive_sharpen_amount,
    boost_contrast,
    boost_details,
    boost_saturation,
    enhance,
    high_pass_boost,
    reduce_noise,
)


@pytest.fixture
def photo_analysis():
    return ContentAnalysis(
        content_type=ContentType.PHOTO,
        noise_level=0.05,
        edge_density=0.2,
        skin_tone_ratio=0.0,
        compression_artifact_score=0.0,
    )


@pytest.fixture
def textured_buffer():
    rng = np.random.default_rng(5)
    arr = rng.integers(0, 256, size=(48, 64, 4), dtype=np.uint8)
    return RasterBuffer(64, 48, arr)


class TestEnhance:
    def test_all_steps_disabled_is_identity(self, textured_buffer, photo_analysis):
        before = textured_buffer.pixels.copy()
        out = enhance(textured_buffer, photo_analysis, EnhanceOptions.disabled())
        assert np.array_equal(out.pixels, before)

    def test_preserves_dimensions_and_alpha(self, textured_buffer, photo_analysis):
        opts = EnhanceOptions(sharpen_amount=60, contrast_boost=40)
        out = enhance(textured_buffer, photo_analysis, opts)
        assert out.dimensions == textured_buffer.dimensions
        assert out.pixels.shape == textured_buffer.pixels.shape
        assert np.array_equal(out.alpha(), textured_buffer.alpha())

    def test_does_not_mutate_input(self, textured_buffer, photo_analysis):
        before = textured_buffer.pixels.copy()
        enhance(textured_buffer, photo_analysis, EnhanceOptions(sharpen_amount=80))
        assert np.array_equal(textured_buffer.pixels, before)

    def test_sharpen_leaves_border_untouched(self, textured_buffer, photo_analysis):
        opts = EnhanceOptions(enhance_details=False, reduce_noise=False, color_enhancement=False,
                              sharpen_amount=100)
        out = enhance(textured_buffer, photo_analysis, opts)
        b = SHARPEN_BORDER
        assert np.array_equal(out.pixels[:b], textured_buffer.pixels[:b])
        assert np.array_equal(out.pixels[-b:], textured_buffer.pixels[-b:])
        assert np.array_equal(out.pixels[:, :b], textured_buffer.pixels[:, :b])
        assert np.array_equal(out.pixels[:, -b:], textured_buffer.pixels[:, -b:])
        assert not np.array_equal(out.pixels, textured_buffer.pixels)

    def test_solid_red_survives_every_step(self, red_buffer, photo_analysis):
        opts = EnhanceOptions(sharpen_amount=50, contrast_boost=50)
        out = enhance(red_buffer, photo_analysis, opts)
        assert (out.pixels == np.array([255, 0, 0, 255], dtype=np.uint8)).all()

    def test_accepts_upscale_options_and_no_analysis(self, textured_buffer):
        out = enhance(textured_buffer, None, UpscaleOptions(sharpen_amount=20))
        assert out.dimensions == textured_buffer.dimensions

    def test_guided_noise_reduction(self, textured_buffer, photo_analysis):
        opts = EnhanceOptions(enhance_details=False, color_enhancement=False)
        out = enhance(textured_buffer, photo_analysis, opts, guide=textured_buffer)
        assert out.dimensions == textured_buffer.dimensions
        assert np.array_equal(out.alpha(), textured_buffer.alpha())


class TestSteps:
    def test_adaptive_sharpen_amount(self):
        assert adaptive_sharpen_amount(50, 0.2, ContentType.PHOTO) == pytest.approx(0.5)
        assert adaptive_sharpen_amount(50, 0.5, ContentType.PHOTO) == pytest.approx(0.35)
        assert adaptive_sharpen_amount(50, 0.05, ContentType.PHOTO) == pytest.approx(0.65)
        assert adaptive_sharpen_amount(50, 0.2, ContentType.TEXT) == pytest.approx(0.25)

    def test_contrast_keeps_extremes(self):
        rgb = np.array([[[0.0, 1.0, 0.5]]], dtype=np.float32)
        out = boost_contrast(rgb, 1.0)
        assert out[0, 0, 0] == 0.0
        assert out[0, 0, 1] == 1.0
        assert out[0, 0, 2] == pytest.approx(0.5)

    def test_contrast_spreads_midtones(self):
        rgb = np.array([[[0.3, 0.7]]], dtype=np.float32)
        out = boost_contrast(rgb, 1.0)
        assert out[0, 0, 0] < 0.3
        assert out[0, 0, 1] > 0.7

    def test_saturation_keeps_gray(self):
        gray = np.full((4, 4, 3), 0.4, dtype=np.float32)
        assert np.allclose(boost_saturation(gray), gray, atol=1e-6)

    def test_detail_boost_leaves_flat_image(self):
        flat = np.full((32, 32, 3), 0.25, dtype=np.float32)
        assert np.allclose(boost_details(flat, levels=3, strength=1.0), flat, atol=1e-6)

    def test_high_pass_boost_amplifies_step(self):
        rgb = np.zeros((16, 16, 3), dtype=np.float32)
        rgb[:, 8:] = 0.5
        out = high_pass_boost(rgb, radius=2, amount=0.5)
        assert out[8, 8, 0] > 0.5
        assert out[8, 7, 0] == 0.0

    def test_reduce_noise_smooths(self):
        rng = np.random.default_rng(3)
        rgb = np.clip(0.5 + rng.normal(0, 0.02, size=(32, 32, 3)), 0, 1).astype(np.float32)
        out = reduce_noise(rgb)
        assert out[2:-2, 2:-2].std() < rgb[2:-2, 2:-2].std()
