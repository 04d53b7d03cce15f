import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import cli
import tracing
from errors import PartialBatchFailure
from profiles import DEFAULT_MODEL, ModelKind, NormalizationRange, TensorLayout
from restore_images import PipelineFailure, ProcessResult, Stage


class TestParseArgs(unittest.TestCase):
    def test_images_defaults(self):
        args = cli.parse_args(["images", "a.png", "photos"])
        self.assertEqual(args.command, "images")
        self.assertEqual(args.inputs, ["a.png", "photos"])
        self.assertEqual(args.model, DEFAULT_MODEL)
        self.assertEqual(args.jobs, 1)
        self.assertEqual(args.working_cap, 512)
        self.assertIsNone(args.providers)

    def test_video_defaults(self):
        args = cli.parse_args(["video", "clip.mp4"])
        self.assertEqual(args.input_video, "clip.mp4")
        self.assertIsNone(args.jobs)
        self.assertEqual(args.crf, 18)
        self.assertEqual(args.preset, "medium")
        self.assertFalse(args.keep_temp)

    def test_provider_is_repeatable(self):
        args = cli.parse_args([
            "images", "a.png",
            "--provider", "CUDAExecutionProvider",
            "--provider", "CPUExecutionProvider",
        ])
        self.assertEqual(args.providers, ["CUDAExecutionProvider", "CPUExecutionProvider"])

    def test_unknown_model_is_rejected(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                cli.parse_args(["images", "a.png", "--model", "nope"])


class TestBuildProfile(unittest.TestCase):
    def test_catalog_profile(self):
        args = cli.parse_args(["images", "a.png", "-m", "SwinIR-Noise"])
        profile = cli.build_profile(args)
        self.assertEqual(profile.kind, ModelKind.DENOISING)

    def test_custom_model_file(self):
        args = cli.parse_args([
            "images", "a.png",
            "--model-file", "/models/mine.onnx",
            "--scale", "2",
            "--window", "16",
            "--layout", "nhwc",
            "--input-range", "neg-one-to-one",
            "--min-dim", "64",
        ])
        profile = cli.build_profile(args)
        self.assertEqual(profile.name, "mine")
        self.assertEqual(profile.scale_factor, 2)
        self.assertEqual(profile.window_multiple, 16)
        self.assertEqual(profile.tensor_layout, TensorLayout.CHANNELS_LAST)
        self.assertEqual(profile.input_range, NormalizationRange.NEG_ONE_TO_ONE)
        self.assertEqual(profile.output_range, NormalizationRange.ZERO_TO_ONE)
        self.assertEqual(profile.minimum_dimension, 64)


class TestMain(unittest.TestCase):
    def test_models_command_lists_catalog(self):
        with mock.patch("sys.stdout", new_callable=io.StringIO) as captured:
            rc = cli.main(["models"])
        self.assertEqual(rc, 0)
        self.assertIn(DEFAULT_MODEL, captured.getvalue())

    def test_invalid_crf_returns_error(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO) as captured:
            rc = cli.main(["video", "clip.mp4", "--crf", "60"])
        self.assertEqual(rc, 1)
        self.assertIn("CRF", captured.getvalue())

    def test_images_with_failures_returns_nonzero(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            image = Path(temp_dir) / "a.png"
            image.touch()
            result = ProcessResult(image, Path(temp_dir) / "a_4x.png", (10, 10), (40, 40), 0.1)
            failure = PipelineFailure(image, Stage.INFERRED, "engine exploded")
            with mock.patch("cli.process_batch", return_value=([result], [failure])) as batch_mock, \
                    mock.patch("sys.stdout", new_callable=io.StringIO), \
                    mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
                rc = cli.main(["images", str(image), "-o", temp_dir, "-j", "2"])

        self.assertEqual(rc, 1)
        self.assertIn("failed at Inferred", stderr.getvalue())
        self.assertEqual(batch_mock.call_args[1]["parallelism"], 2)

    def test_images_success_returns_zero(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            image = Path(temp_dir) / "a.png"
            image.touch()
            with mock.patch("cli.process_batch", return_value=([], [])), \
                    mock.patch("sys.stdout", new_callable=io.StringIO):
                rc = cli.main(["images", str(image)])
        self.assertEqual(rc, 0)

    def test_video_partial_failure_reports_items(self):
        failure = PipelineFailure(Path("/w/frame_000002.png"), Stage.LOADED, "truncated")
        error = PartialBatchFailure([], [failure])
        with mock.patch("cli.process_video", side_effect=error), \
                mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            rc = cli.main(["video", "clip.mp4"])

        self.assertEqual(rc, 1)
        self.assertIn("frame_000002.png: failed at Loaded", stderr.getvalue())

    def test_keyboard_interrupt_returns_130(self):
        with mock.patch("cli.process_video", side_effect=KeyboardInterrupt), \
                mock.patch("sys.stderr", new_callable=io.StringIO):
            rc = cli.main(["video", "clip.mp4"])
        self.assertEqual(rc, 130)

    def test_otlp_endpoint_enables_tracing(self):
        endpoint = "http://collector:4318/v1/traces"
        with tempfile.TemporaryDirectory() as temp_dir:
            image = Path(temp_dir) / "a.png"
            image.touch()
            with mock.patch("cli.init_tracing") as init_mock, \
                    mock.patch("cli.shutdown_tracing") as shutdown_mock, \
                    mock.patch("cli.process_batch", return_value=([], [])), \
                    mock.patch("sys.stdout", new_callable=io.StringIO):
                rc = cli.main(["images", str(image), "--otlp-endpoint", endpoint])

        self.assertEqual(rc, 0)
        init_mock.assert_called_once_with(endpoint)
        shutdown_mock.assert_called_once()

    def test_tracing_is_off_by_default(self):
        with mock.patch("cli.init_tracing") as init_mock, \
                mock.patch("sys.stdout", new_callable=io.StringIO):
            cli.main(["models"])
        init_mock.assert_not_called()


class TestTracing(unittest.TestCase):
    def test_traced_decorator_preserves_function_name(self):
        @tracing.traced
        def example_function():
            return 7

        self.assertEqual(example_function.__name__, "example_function")
        self.assertEqual(example_function(), 7)


if __name__ == "__main__":
    unittest.main()
