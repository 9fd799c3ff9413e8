"""
End-to-end orchestration, batch runs and the CLI.
"""

import json
import threading
from pathlib import Path

import numpy as np
import pytest

import pipeline
from raster_engine.buffer import RasterBuffer
from raster_engine.config import ResourceBudget, SegmentationOptions, UpscaleOptions
from raster_engine.constants import ContentType, OutputFormat
from raster_engine.errors import (
    DecodeError,
    InputTooLargeError,
    MemoryLimitExceededError,
    OperationCancelledError,
    UnsupportedFormatError,
)
from raster_engine.io_utils import decode_image, encode_image, load_image_file
from raster_engine.processing import (
    MODE_REMOVE_BG,
    MODE_UPSCALE,
    process_batch,
    process_one_image,
    remove_background,
    upscale_image,
    upscale_raster,
)


class TestUpscale:
    def test_solid_red_doubles(self, red_buffer, png_bytes):
        opts = UpscaleOptions(scale_factor=2.0, primary_algorithm="bicubic")
        result = upscale_image(png_bytes(red_buffer), "image/png", opts)
        assert result.final_dimensions == (200, 200)
        assert result.actual_scale_factor == 2.0
        assert result.algorithms_used[0] == "bicubic"
        assert (result.buffer.pixels == np.array([255, 0, 0, 255], dtype=np.uint8)).all()

        decoded = decode_image(result.data)
        assert decoded.dimensions == (200, 200)
        assert (decoded.pixels == np.array([255, 0, 0, 255], dtype=np.uint8)).all()

    def test_auto_mode_reports_plan(self, noise_buffer, png_bytes):
        result = upscale_image(png_bytes(noise_buffer), "image/png", UpscaleOptions(scale_factor=2.5))
        assert result.final_dimensions == (92, 57)
        assert result.algorithms_used
        assert result.processing_time_ms >= 0.0
        summary = result.summary()
        assert summary["final_dimensions"] == [92, 57]
        json.dumps(summary)

    def test_content_type_override(self, noise_buffer):
        out, plan, analysis = upscale_raster(noise_buffer, UpscaleOptions(content_type="art", hybrid_mode=False))
        assert analysis.content_type is ContentType.ART
        assert plan.algorithms_used == ("line_art",)
        assert out.dimensions == (74, 46)

    def test_progress_is_reported_in_order(self, red_buffer, png_bytes):
        calls = []
        upscale_image(png_bytes(red_buffer), "image/png", UpscaleOptions(primary_algorithm="nearest"),
                      progress=lambda pct, stage: calls.append((pct, stage)))
        percents = [p for p, _ in calls]
        assert percents == sorted(percents)
        assert percents[0] == 10
        assert calls[-1] == (100, "Complete")
        assert any(stage.startswith("Applying") for _, stage in calls)

    def test_size_guard_runs_before_decoding(self):
        with pytest.raises(InputTooLargeError):
            upscale_image(b"\x00" * 64, "image/png", max_input_bytes=32)

    def test_unsupported_type(self, red_buffer, png_bytes):
        with pytest.raises(UnsupportedFormatError):
            upscale_image(png_bytes(red_buffer), "image/gif")

    def test_decode_failure(self):
        with pytest.raises(DecodeError):
            upscale_image(b"garbage", "image/png")

    def test_memory_ceiling_aborts(self, red_buffer, png_bytes):
        with pytest.raises(MemoryLimitExceededError):
            upscale_image(png_bytes(red_buffer), "image/png", budget=ResourceBudget(max_bytes=1024))

    def test_decoded_source_counts_against_budget(self, png_bytes):
        # 90,000 px decoded is ~1.4 MB of working estimate; the capped output is tiny
        source = RasterBuffer.solid(300, 300, (30, 60, 90, 255))
        budget = ResourceBudget(max_bytes=1024 * 1024, resample_pixel_ceiling=10_000)
        with pytest.raises(MemoryLimitExceededError) as exc:
            upscale_image(png_bytes(source), "image/png", budget=budget)
        assert "decoded source" in str(exc.value)
        with pytest.raises(MemoryLimitExceededError):
            remove_background(png_bytes(source), "image/png", budget=budget)

    def test_oversized_source_is_reduced_before_analysis(self, png_bytes):
        source = RasterBuffer.solid(300, 200, (255, 0, 0, 255))
        budget = ResourceBudget(max_bytes=64 * 1024 * 1024, resample_pixel_ceiling=10_000)
        result = upscale_image(png_bytes(source), "image/png", UpscaleOptions(primary_algorithm="bicubic"),
                               budget=budget)
        w, h = result.final_dimensions
        assert w * h <= 10_000
        assert result.original_dimensions == (300, 200)
        assert result.actual_scale_factor < 1.0
        assert (result.buffer.pixels == np.array([255, 0, 0, 255], dtype=np.uint8)).all()

    def test_cancellation(self, red_buffer, png_bytes):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            upscale_image(png_bytes(red_buffer), "image/png", cancel=cancel)

    def test_jpeg_output(self, red_buffer, png_bytes):
        opts = UpscaleOptions(scale_factor=1.5, output_format="jpeg", quality=80)
        result = upscale_image(png_bytes(red_buffer), "image/png", opts)
        assert result.data[:2] == b"\xff\xd8"
        assert result.final_dimensions == (150, 150)


class TestRemoveBackground:
    def test_blue_square_cutout(self, blue_square, png_bytes):
        buf, start = blue_square
        end = start + 50
        result = remove_background(png_bytes(buf), "image/png", SegmentationOptions())
        alpha = result.buffer.alpha()
        assert result.final_dimensions == (100, 100)
        assert (alpha[start + 2:end - 2, start + 2:end - 2] == 255).all()
        assert (alpha[:start - 10] == 0).all()
        assert (alpha[end + 10:] == 0).all()
        band = alpha[50, start - 8:start]
        assert ((band > 0) & (band < 255)).any()
        assert np.array_equal(result.buffer.rgb(), buf.rgb())

        decoded = decode_image(result.data)
        assert np.array_equal(decoded.alpha(), alpha)
        assert "feathering" in result.algorithms_used
        assert 0.0 < result.quality["background_cleanness"] < 1.0

    def test_uniform_image(self, uniform_buffer, png_bytes):
        result = remove_background(png_bytes(uniform_buffer), "image/png")
        assert len(np.unique(result.mask)) == 1

    def test_jpeg_output_rejected(self, blue_square, png_bytes):
        buf, _ = blue_square
        with pytest.raises(UnsupportedFormatError):
            remove_background(png_bytes(buf), "image/png", SegmentationOptions(output_format="jpeg"))

    def test_runs_at_reduced_resolution(self, png_bytes):
        buf = RasterBuffer.solid(400, 300, (90, 90, 90, 255))
        budget = ResourceBudget(segment_pixel_ceiling=30_000)
        result = remove_background(png_bytes(buf), "image/png", budget=budget)
        w, h = result.working_dimensions
        assert w * h <= 30_000
        assert result.final_dimensions == (400, 300)
        assert result.mask.shape == (300, 400)

    def test_webp_output(self, blue_square, png_bytes):
        buf, _ = blue_square
        result = remove_background(png_bytes(buf), "image/png", SegmentationOptions(output_format="webp"))
        assert result.output_format is OutputFormat.WEBP
        assert result.data[:4] == b"RIFF"


class TestBatch:
    @pytest.fixture
    def input_dir(self, tmp_path, red_buffer, blue_square):
        folder = tmp_path / "input"
        (folder / "nested").mkdir(parents=True)
        (folder / "red.png").write_bytes(encode_image(red_buffer))
        (folder / "nested" / "square.png").write_bytes(encode_image(blue_square[0]))
        (folder / "broken.png").write_bytes(b"not a png")
        return folder

    def test_process_one_image(self, input_dir):
        result = process_one_image(input_dir / "red.png", MODE_UPSCALE, UpscaleOptions(scale_factor=1.5))
        assert result.final_dimensions == (150, 150)
        with pytest.raises(ValueError):
            process_one_image(input_dir / "red.png", "sharpen")

    def test_oversized_file_rejected_from_its_size(self, tmp_path, monkeypatch):
        big = tmp_path / "big.png"
        big.write_bytes(b"\x00" * 64)

        def fail_open(*args, **kwargs):
            raise AssertionError("file should not be opened")

        monkeypatch.setattr(Path, "open", fail_open)
        with pytest.raises(InputTooLargeError) as exc:
            load_image_file(big, max_bytes=32)
        assert exc.value.size_bytes == 64
        assert exc.value.limit_bytes == 32

    @pytest.mark.parametrize("workers", [1, 3])
    def test_failures_are_recorded_and_batch_continues(self, input_dir, tmp_path, workers):
        names = ["red.png", "broken.png", "nested/square.png"]
        jobs = [(input_dir / n, tmp_path / "out" / f"{i}.png") for i, n in enumerate(names)]
        outcomes = process_batch(jobs, MODE_REMOVE_BG, workers=workers)
        assert [o.input_path for o in outcomes] == [j[0] for j in jobs]
        assert [o.ok for o in outcomes] == [True, False, True]
        assert "DecodeError" in outcomes[1].error
        assert jobs[0][1].exists() and jobs[2][1].exists()
        assert not jobs[1][1].exists()

    def test_existing_outputs_are_skipped(self, input_dir, tmp_path):
        dst = tmp_path / "out.png"
        dst.write_bytes(b"keep me")
        outcome = process_batch([(input_dir / "red.png", dst)], MODE_UPSCALE)[0]
        assert outcome.skipped
        assert dst.read_bytes() == b"keep me"

        outcome = process_batch([(input_dir / "red.png", dst)], MODE_UPSCALE, overwrite=True)[0]
        assert outcome.ok and not outcome.skipped
        assert decode_image(dst.read_bytes()).dimensions == (200, 200)

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            process_batch([], "sharpen")


class TestCli:
    @pytest.fixture
    def input_dir(self, tmp_path, red_buffer):
        folder = tmp_path / "input"
        (folder / "sub").mkdir(parents=True)
        (folder / "a.png").write_bytes(encode_image(red_buffer))
        (folder / "sub" / "b.png").write_bytes(encode_image(red_buffer))
        return folder

    def test_upscale_folder(self, input_dir, tmp_path):
        out, models = tmp_path / "out", tmp_path / "models"
        code = pipeline.main([
            "-i", str(input_dir), "-o", str(out), "--models", str(models),
            "--scale", "1.5", "--algorithm", "bicubic", "--keep-structure",
            "--memory-limit-mb", "256", "--workers", "2",
        ])
        assert code == 0
        assert (out / "a_upscaled.png").exists()
        assert (out / "sub" / "b_upscaled.png").exists()

        params = json.loads((models / "run_params.json").read_text(encoding="utf-8"))
        assert params[-1]["mode"] == "upscale"
        assert params[-1]["options"]["primary_algorithm"] == "bicubic"
        metrics = json.loads((models / "metrics.json").read_text(encoding="utf-8"))
        assert metrics[-1]["succeeded"] == 2
        assert metrics[-1]["failed"] == 0

    def test_remove_bg_single_file(self, input_dir, tmp_path):
        out = tmp_path / "cut"
        code = pipeline.main([
            "--mode", "remove-bg", "-i", str(input_dir / "a.png"), "-o", str(out),
            "--models", str(tmp_path / "models"), "--format", "webp", "--memory-limit-mb", "256",
        ])
        assert code == 0
        assert (out / "a_nobg.webp").exists()

    def test_missing_input_fails(self, tmp_path):
        code = pipeline.main(["-i", str(tmp_path / "nope"), "-o", str(tmp_path / "out"),
                              "--models", str(tmp_path / "models"), "--memory-limit-mb", "64"])
        assert code == 1

    def test_bad_algorithm_is_a_usage_error(self, tmp_path):
        with pytest.raises(SystemExit):
            pipeline.main(["-i", str(tmp_path), "--algorithm", "magic", "--models", str(tmp_path / "m")])
