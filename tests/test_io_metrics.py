"""
Image I/O guards, codec, output paths, quality metrics and run history.
"""

import json
from pathlib import Path

import numpy as np
import pytest

from raster_engine.buffer import RasterBuffer
from raster_engine.constants import OutputFormat
from raster_engine.errors import DecodeError, InputTooLargeError, UnsupportedFormatError
from raster_engine.io_utils import (
    check_input,
    decode_image,
    discover_images,
    encode_image,
    is_image_file,
    make_output_path,
    mime_type_for,
)
from raster_engine.metrics import (
    append_run_metrics,
    compute_quality_metrics,
    save_params_json,
    segmentation_quality,
)


class TestGuards:
    def test_too_large(self):
        with pytest.raises(InputTooLargeError) as exc:
            check_input(b"x" * 11, "image/png", max_bytes=10)
        assert exc.value.size_bytes == 11
        assert exc.value.limit_bytes == 10

    def test_limit_is_inclusive(self):
        check_input(b"x" * 10, "image/png", max_bytes=10)

    @pytest.mark.parametrize("mime", ["image/gif", "text/plain", "", None])
    def test_unsupported_mime(self, mime):
        with pytest.raises(UnsupportedFormatError):
            check_input(b"abc", mime)

    def test_mime_is_case_insensitive(self):
        check_input(b"abc", "IMAGE/JPEG")


class TestCodec:
    def test_garbage_does_not_decode(self):
        with pytest.raises(DecodeError):
            decode_image(b"definitely not an image")
        with pytest.raises(DecodeError):
            decode_image(b"")

    def test_png_keeps_alpha(self, noise_buffer):
        data = encode_image(noise_buffer, OutputFormat.PNG)
        assert data[:8] == b"\x89PNG\r\n\x1a\n"
        decoded = decode_image(data)
        assert np.array_equal(decoded.pixels, noise_buffer.pixels)

    def test_jpeg_drops_alpha(self):
        buf = RasterBuffer.solid(16, 16, (200, 100, 50, 10))
        decoded = decode_image(encode_image(buf, "jpeg", quality=90))
        assert decoded.dimensions == (16, 16)
        assert (decoded.alpha() == 255).all()
        assert np.abs(decoded.rgb().astype(int) - [200, 100, 50]).max() <= 4

    def test_webp_encodes(self, red_buffer):
        data = encode_image(red_buffer, OutputFormat.WEBP, quality=80)
        assert data[:4] == b"RIFF"
        assert decode_image(data).dimensions == (100, 100)

    def test_gray_input_becomes_rgba(self):
        gray = RasterBuffer.from_array(np.full((6, 6), 77, dtype=np.uint8))
        decoded = decode_image(encode_image(gray))
        assert decoded.pixels.shape == (6, 6, 4)
        assert (decoded.rgb() == 77).all()


class TestPaths:
    def test_output_path_suffix_and_extension(self, tmp_path):
        inp = tmp_path / "in" / "sub" / "photo.JPG"
        out = make_output_path(inp, tmp_path / "in", tmp_path / "out", keep_structure=True,
                               mode="remove-bg", output_format=OutputFormat.PNG)
        assert out == tmp_path / "out" / "sub" / "photo_nobg.png"

        flat = make_output_path(inp, tmp_path / "in", tmp_path / "out", keep_structure=False,
                                mode="upscale", output_format=OutputFormat.JPEG)
        assert flat == tmp_path / "out" / "photo_upscaled.jpg"

    def test_output_path_outside_root(self, tmp_path):
        out = make_output_path(Path("/elsewhere/a.png"), tmp_path, tmp_path / "out", keep_structure=True)
        assert out == tmp_path / "out" / "a_upscaled.png"

    def test_discover_images(self, tmp_path, red_buffer):
        (tmp_path / "nested").mkdir()
        data = encode_image(red_buffer)
        (tmp_path / "a.png").write_bytes(data)
        (tmp_path / "nested" / "b.png").write_bytes(data)
        (tmp_path / "notes.txt").write_text("hello")
        found = {p.name for p in discover_images(tmp_path)}
        assert {"a.png", "b.png"} <= found
        assert "notes.txt" not in found
        assert is_image_file(tmp_path / "a.png")
        assert not is_image_file(tmp_path / "notes.txt")

    def test_mime_type_for(self):
        assert mime_type_for(Path("x.JPEG")) == "image/jpeg"
        assert mime_type_for(Path("x.webp")) == "image/webp"
        assert mime_type_for(Path("x.gif")) == "application/octet-stream"


class TestQualityMetrics:
    def test_flat_image(self, red_buffer):
        q = compute_quality_metrics(red_buffer)
        assert q.sharpness == 0.0
        assert q.noise_level == 0.0
        assert q.artifact_level == 100.0
        assert 0.0 <= q.overall_quality <= 100.0

    def test_busy_image_is_sharper(self, red_buffer):
        rng = np.random.default_rng(11)
        busy = RasterBuffer(100, 100, rng.integers(0, 256, size=(100, 100, 4), dtype=np.uint8))
        assert compute_quality_metrics(busy).sharpness > compute_quality_metrics(red_buffer).sharpness

    def test_tiny_image(self):
        q = compute_quality_metrics(RasterBuffer.solid(4, 4))
        assert q.to_dict() == {"sharpness": 0.0, "noise_level": 0.0, "artifact_level": 0.0,
                               "overall_quality": 0.0}

    def test_segmentation_quality(self):
        mask = np.full((10, 10), 255, dtype=np.uint8)
        q = segmentation_quality(mask)
        assert q["background_cleanness"] == 1.0
        assert q["edge_accuracy"] == 0.0

        mask[:, :5] = 0
        q = segmentation_quality(mask)
        assert 0.0 < q["edge_accuracy"] < 1.0
        assert q["detail_preservation"] > 0.0


class TestHistory:
    def test_params_history_appends(self, tmp_path):
        models = tmp_path / "models"
        save_params_json(models, {"run": 1})
        save_params_json(models, {"run": 2})
        data = json.loads((models / "run_params.json").read_text(encoding="utf-8"))
        assert data == [{"run": 1}, {"run": 2}]

    def test_metrics_history_recovers_from_bad_file(self, tmp_path):
        tmp_path.joinpath("metrics.json").write_text("{not json", encoding="utf-8")
        append_run_metrics(tmp_path, {"ok": True})
        data = json.loads((tmp_path / "metrics.json").read_text(encoding="utf-8"))
        assert data == [{"ok": True}]

    def test_single_object_history_becomes_list(self, tmp_path):
        tmp_path.joinpath("metrics.json").write_text('{"old": 1}', encoding="utf-8")
        append_run_metrics(tmp_path, {"new": 2})
        data = json.loads((tmp_path / "metrics.json").read_text(encoding="utf-8"))
        assert data == [{"old": 1}, {"new": 2}]
