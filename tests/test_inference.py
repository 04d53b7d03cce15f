import unittest

import numpy as np

import inference
from errors import InferenceError
from fakes import FailingSession, UpscaleSession


class TestProviderChoice(unittest.TestCase):
    def test_prefers_cuda_with_cpu_fallback(self):
        providers = inference.choose_providers(["CPUExecutionProvider", "CUDAExecutionProvider"])
        self.assertEqual(providers, ["CUDAExecutionProvider", "CPUExecutionProvider"])

    def test_directml_before_cpu(self):
        providers = inference.choose_providers(["CPUExecutionProvider", "DmlExecutionProvider"])
        self.assertEqual(providers, ["DmlExecutionProvider", "CPUExecutionProvider"])

    def test_cpu_only(self):
        self.assertEqual(inference.choose_providers(["CPUExecutionProvider"]), ["CPUExecutionProvider"])

    def test_unknown_providers_pass_through(self):
        self.assertEqual(inference.choose_providers(["AzureExecutionProvider"]), ["AzureExecutionProvider"])


class TestInferenceInvoker(unittest.TestCase):
    def _invoker(self, session, calls=None):
        def factory(model_path, providers):
            if calls is not None:
                calls.append((model_path, list(providers)))
            return session

        return inference.InferenceInvoker(
            "model.onnx",
            providers=["CPUExecutionProvider"],
            session_factory=factory,
        )

    def test_session_is_created_lazily_once(self):
        calls = []
        invoker = self._invoker(UpscaleSession(scale=2), calls)
        self.assertFalse(invoker.is_open)
        self.assertEqual(calls, [])

        tensor = np.zeros((1, 3, 4, 4), dtype=np.float32)
        first = invoker.run(tensor)
        invoker.run(tensor)

        self.assertEqual(first.shape, (1, 3, 8, 8))
        self.assertEqual(calls, [("model.onnx", ["CPUExecutionProvider"])])
        self.assertTrue(invoker.is_open)

    def test_float16_inputs_are_cast(self):
        session = UpscaleSession(input_type="tensor(float16)")
        invoker = self._invoker(session)
        output = invoker.run(np.ones((1, 3, 2, 2), dtype=np.float32))

        self.assertEqual(session.feeds[0].dtype, np.float16)
        self.assertEqual(output.dtype, np.float32)

    def test_run_failure_raises_inference_error_with_diagnostic(self):
        invoker = self._invoker(FailingSession())
        with self.assertRaises(InferenceError) as ctx:
            invoker.run(np.zeros((1, 3, 2, 2), dtype=np.float32))
        self.assertIn("Got invalid dimensions", str(ctx.exception))

    def test_load_failure_raises_inference_error(self):
        def broken_factory(model_path, providers):
            raise RuntimeError("NO_SUCHFILE")

        invoker = inference.InferenceInvoker(
            "missing.onnx",
            providers=["CPUExecutionProvider"],
            session_factory=broken_factory,
        )
        with self.assertRaises(InferenceError) as ctx:
            invoker.run(np.zeros((1, 3, 2, 2), dtype=np.float32))
        self.assertIn("NO_SUCHFILE", str(ctx.exception))
        self.assertFalse(invoker.is_open)

    def test_context_manager_releases_session_on_error(self):
        invoker = self._invoker(UpscaleSession())
        with self.assertRaises(ValueError):
            with invoker:
                invoker.run(np.zeros((1, 3, 2, 2), dtype=np.float32))
                self.assertTrue(invoker.is_open)
                raise ValueError("caller failure")
        self.assertFalse(invoker.is_open)


if __name__ == "__main__":
    unittest.main()
