"""
Unit tests for onnxruntime helpers: file discovery, input-name resolution,
and the locked OnnxComponent base.
"""

import threading

import numpy as np
import pytest

from lcm_imagegen.config import SessionConfig
from lcm_imagegen.errors import (
    InferenceExecutionError,
    ModelFileNotFoundError,
    UnresolvedTensorNameError,
)
from lcm_imagegen.runtime import (
    OnnxComponent,
    build_session_options,
    find_model_file,
    numpy_dtype,
    resolve_input_name,
)

pytestmark = pytest.mark.unit


class TestFindModelFile:
    def test_conventional_path(self, fake_model_dir):
        path = find_model_file(fake_model_dir, "UNet", ["unet/model.onnx", "unet.onnx"])
        assert path == fake_model_dir / "unet" / "model.onnx"

    def test_candidates_tried_in_order(self, tmp_path):
        (tmp_path / "unet.onnx").write_bytes(b"")
        (tmp_path / "lcm_unet.onnx").write_bytes(b"")
        path = find_model_file(tmp_path, "UNet", ["unet/model.onnx", "unet.onnx", "lcm_unet.onnx"])
        assert path.name == "unet.onnx"

    def test_pattern_fallback(self, tmp_path):
        nested = tmp_path / "onnx" / "my_vae_decoder_fp16.onnx"
        nested.parent.mkdir()
        nested.write_bytes(b"")
        path = find_model_file(
            tmp_path, "VAE decoder", ["vae_decoder/model.onnx"], ["*vae*decoder*.onnx"]
        )
        assert path == nested

    def test_missing_file(self, tmp_path):
        with pytest.raises(ModelFileNotFoundError) as exc_info:
            find_model_file(tmp_path, "UNet ONNX file", ["unet/model.onnx"], ["*unet*.onnx"])
        err = exc_info.value
        assert isinstance(err, FileNotFoundError)
        assert err.component == "UNet ONNX file"
        assert str(tmp_path) in str(err)
        assert "unet/model.onnx" in str(err)


class TestResolveInputName:
    def test_exact_match(self):
        assert resolve_input_name(["sample", "timestep"], ["sample"], "sample") == "sample"

    def test_case_insensitive(self):
        assert resolve_input_name(["Sample"], ["sample"], "sample") == "Sample"

    def test_exact_beats_substring(self):
        names = ["noisy_sample_input", "x"]
        assert resolve_input_name(names, ["sample", "x"], "sample") == "x"

    def test_candidate_order(self):
        names = ["context", "encoder_hidden_states"]
        assert (
            resolve_input_name(names, ["encoder_hidden_states", "context"], "encoder")
            == "encoder_hidden_states"
        )

    def test_substring_fallback(self):
        assert resolve_input_name(["unet_sample_in"], ["sample"], "sample") == "unet_sample_in"

    def test_unresolved_lists_candidates_and_inputs(self):
        with pytest.raises(UnresolvedTensorNameError) as exc_info:
            resolve_input_name(["foo", "bar"], ["sample", "x"], "sample")
        message = str(exc_info.value)
        assert "Could not resolve sample input" in message
        assert "sample, x" in message
        assert "foo, bar" in message
        assert exc_info.value.available == ["foo", "bar"]

    def test_optional_returns_none(self):
        assert resolve_input_name(["foo"], ["timestep_cond"], "timestep_cond", required=False) is None


class TestDtypes:
    def test_known_types(self):
        assert numpy_dtype("tensor(float16)") == np.float16
        assert numpy_dtype("tensor(int32)") == np.int32

    def test_unknown_type_uses_default(self):
        assert numpy_dtype("tensor(bfloat16)", np.float32) == np.float32


class TestSessionOptions:
    def test_threads_and_optimization(self):
        import onnxruntime as ort

        options = build_session_options(
            SessionConfig(intra_op_num_threads=3, graph_optimization="basic")
        )
        assert options.intra_op_num_threads == 3
        assert options.graph_optimization_level == ort.GraphOptimizationLevel.ORT_ENABLE_BASIC

    def test_directml_disables_mem_pattern(self):
        options = build_session_options(SessionConfig(provider="directml"))
        assert options.enable_mem_pattern is False


class TestOnnxComponent:
    def test_metadata(self, make_session):
        session = make_session(
            [("input_ids", [1, 77], "tensor(int64)")], ["last_hidden_state"]
        )
        component = OnnxComponent(session)
        assert component.input_names == ["input_ids"]
        assert component.output_names == ["last_hidden_state"]
        assert component.input_shape("input_ids") == [1, 77]
        assert component.input_dtype("input_ids") == np.int64

    def test_engine_error_is_wrapped(self, make_session):
        def fail(feeds):
            raise RuntimeError("bad shape")

        component = OnnxComponent(make_session([("x", [1], "tensor(float)")], ["y"], fail))
        with pytest.raises(InferenceExecutionError, match="bad shape") as exc_info:
            component.run({"x": np.zeros(1, dtype=np.float32)})
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_runs_are_serialized(self, make_session):
        active = []
        overlaps = []
        guard = threading.Lock()

        def slow(feeds):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
            threading.Event().wait(0.01)
            with guard:
                active.pop()
            return [feeds["x"]]

        component = OnnxComponent(make_session([("x", [1], "tensor(float)")], ["y"], slow))
        threads = [
            threading.Thread(target=component.run, args=({"x": np.zeros(1, dtype=np.float32)},))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []
