import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

import model_store
from errors import PipelineIOError
from fakes import make_profile


def fake_response(chunks, status_error=None):
    response = mock.MagicMock()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.iter_content.return_value = iter(chunks)
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


class TestDownloadModel(unittest.TestCase):
    def test_download_writes_target_through_part_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            target = Path(temp_dir) / "models" / "demo.onnx"
            with mock.patch("model_store.requests.get", return_value=fake_response([b"abc", b"", b"def"])) as get_mock:
                path = model_store.download_model("https://example.com/demo.onnx", target)

            self.assertEqual(path, target)
            self.assertEqual(target.read_bytes(), b"abcdef")
            self.assertFalse(target.with_name("demo.onnx.part").exists())

        kwargs = get_mock.call_args[1]
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["timeout"], model_store.DOWNLOAD_TIMEOUT_SECONDS)
        self.assertIn("User-Agent", kwargs["headers"])

    def test_http_error_leaves_no_files(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            target = Path(temp_dir) / "demo.onnx"
            response = fake_response([], status_error=requests.HTTPError("404 Not Found"))
            with mock.patch("model_store.requests.get", return_value=response):
                with self.assertRaises(PipelineIOError) as ctx:
                    model_store.download_model("https://example.com/demo.onnx", target)

            self.assertIn("404", str(ctx.exception))
            self.assertEqual(list(Path(temp_dir).iterdir()), [])

    def test_rename_failure_removes_part_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            target = Path(temp_dir) / "demo.onnx"
            with mock.patch("model_store.requests.get", return_value=fake_response([b"data"])), \
                    mock.patch.object(Path, "replace", side_effect=OSError("cross-device link")):
                with self.assertRaises(PipelineIOError):
                    model_store.download_model("https://example.com/demo.onnx", target)

            self.assertFalse(target.exists())
            self.assertFalse(target.with_name("demo.onnx.part").exists())


class TestEnsureModelArtifact(unittest.TestCase):
    def test_local_file_is_used_in_place(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            local = Path(temp_dir) / "custom.onnx"
            local.write_bytes(b"onnx")
            profile = make_profile(artifact_location=str(local))

            self.assertEqual(model_store.ensure_model_artifact(profile), local.resolve())

    def test_missing_local_file_raises(self):
        profile = make_profile(artifact_location="/nonexistent/custom.onnx")
        with self.assertRaises(PipelineIOError):
            model_store.ensure_model_artifact(profile)

    def test_cached_download_is_reused(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            cached = Path(temp_dir) / "fake-model.onnx"
            cached.write_bytes(b"onnx")
            profile = make_profile(artifact_location="https://example.com/model.onnx")

            with mock.patch("model_store.requests.get") as get_mock:
                path = model_store.ensure_model_artifact(profile, Path(temp_dir))

            self.assertEqual(path, cached.resolve())
        get_mock.assert_not_called()

    def test_empty_cached_file_is_downloaded_again(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            cached = Path(temp_dir) / "fake-model.onnx"
            cached.touch()
            profile = make_profile(artifact_location="https://example.com/model.onnx")

            with mock.patch("model_store.requests.get", return_value=fake_response([b"weights"])):
                path = model_store.ensure_model_artifact(profile, Path(temp_dir))

            self.assertEqual(path.read_bytes(), b"weights")

    def test_remote_location_detection(self):
        self.assertTrue(model_store.is_remote_location("https://huggingface.co/x/model.onnx"))
        self.assertFalse(model_store.is_remote_location("models/x.onnx"))


if __name__ == "__main__":
    unittest.main()
