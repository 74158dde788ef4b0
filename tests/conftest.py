"""
Shared pytest fixtures and configuration for lcm-imagegen.

Environment Variables:
    LCM_MODEL_PATH: Path to an LCM ONNX model directory
        (e.g. a local copy of TheyCallMeHex/LCM-Dreamshaper-V7-ONNX)

Example Usage:
    # Run unit tests only (no model files needed)
    pytest -m unit

    # Run integration tests with a real model
    LCM_MODEL_PATH=/path/to/model pytest -m integration
"""

import os
from pathlib import Path

import numpy as np
import pytest

from lcm_imagegen.encoders.clip import ClipTextEncoder
from lcm_imagegen.models.unet import UNetModel
from lcm_imagegen.models.vae import VaeDecoder
from lcm_imagegen.pipelines.lcm import LCMPipeline
from lcm_imagegen.schedulers.lcm import LCMScheduler

SEQ_LEN = 77
HIDDEN_DIM = 8
BOS_TOKEN = 49406
EOS_TOKEN = 49407


def pytest_collection_modifyitems(config, items):
    """Auto-skip model tests when no model directory is configured."""
    for item in items:
        if "requires_model" in item.keywords and not os.getenv("LCM_MODEL_PATH"):
            item.add_marker(pytest.mark.skip(reason="LCM_MODEL_PATH not set"))


# Fake onnxruntime objects


class FakeNodeArg:
    """Stand-in for onnxruntime.NodeArg."""

    def __init__(self, name, shape, type="tensor(float)"):
        self.name = name
        self.shape = shape
        self.type = type


class FakeSession:
    """
    Stand-in for onnxruntime.InferenceSession.

    fn maps the feed dict to the list of outputs. Every feed dict passed to
    run() is recorded in `calls`.
    """

    def __init__(self, inputs, outputs, fn, providers=("CPUExecutionProvider",)):
        self._inputs = [FakeNodeArg(*spec) for spec in inputs]
        self._outputs = [FakeNodeArg(name, []) for name in outputs]
        self._fn = fn
        self._providers = list(providers)
        self.calls = []

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def get_providers(self):
        return self._providers

    def run(self, output_names, feeds):
        self.calls.append(feeds)
        return self._fn(feeds)


class FakeTokenizer:
    """Deterministic character-level tokenizer with the CLIP call signature."""

    def __call__(self, text, padding="max_length", max_length=SEQ_LEN, truncation=True, return_tensors="np"):
        body = [ord(c) % 1000 for c in text][: max_length - 2]
        ids = [BOS_TOKEN, *body, EOS_TOKEN]
        mask = [1] * len(ids) + [0] * (max_length - len(ids))
        ids = ids + [EOS_TOKEN] * (max_length - len(ids))
        return {
            "input_ids": np.array([ids], dtype=np.int64),
            "attention_mask": np.array([mask], dtype=np.int64),
        }


def fake_text_encoder_outputs(feeds):
    ids = (feeds["input_ids"] % 256).astype(np.float32) / 255.0
    hidden = np.repeat(ids[..., None], HIDDEN_DIM, axis=-1)
    hidden = hidden + np.linspace(0.0, 0.1, HIDDEN_DIM, dtype=np.float32)
    pooled = hidden[:, 0, :]
    return [hidden, pooled]


def fake_unet_outputs(feeds):
    # Conditioning signal: embedding of the first prompt token
    sample = feeds["sample"]
    cond = feeds["encoder_hidden_states"][:, 1, :].mean(axis=-1)[:, None, None, None]
    return [(0.9 * sample + 0.2 * cond).astype(np.float32)]


def fake_vae_outputs(feeds):
    latent = feeds["latent_sample"]
    image = np.tanh(0.2 * latent[:, :3])
    image = np.repeat(np.repeat(image, 8, axis=2), 8, axis=3)
    return [image.astype(np.float32)]


@pytest.fixture
def make_session():
    """Factory for FakeSession objects."""

    def _make(inputs, outputs, fn=None, providers=("CPUExecutionProvider",)):
        if fn is None:
            def fn(feeds):
                return [np.zeros((1,), dtype=np.float32)]
        return FakeSession(inputs, outputs, fn, providers)

    return _make


@pytest.fixture
def text_encoder_session(make_session):
    return make_session(
        [("input_ids", [1, SEQ_LEN], "tensor(int32)")],
        ["last_hidden_state", "pooler_output"],
        fake_text_encoder_outputs,
    )


@pytest.fixture
def unet_session(make_session):
    return make_session(
        [
            ("sample", ["batch", 4, "height", "width"], "tensor(float)"),
            ("timestep", [1], "tensor(int64)"),
            ("encoder_hidden_states", ["batch", SEQ_LEN, HIDDEN_DIM], "tensor(float)"),
        ],
        ["out_sample"],
        fake_unet_outputs,
    )


@pytest.fixture
def vae_session(make_session):
    return make_session(
        [("latent_sample", [1, 4, "height", "width"], "tensor(float)")],
        ["sample"],
        fake_vae_outputs,
    )


@pytest.fixture
def fake_tokenizer():
    return FakeTokenizer()


@pytest.fixture
def text_encoder(text_encoder_session, fake_tokenizer):
    return ClipTextEncoder(text_encoder_session, fake_tokenizer)


@pytest.fixture
def unet(unet_session):
    return UNetModel(unet_session)


@pytest.fixture
def vae(vae_session):
    return VaeDecoder(vae_session)


@pytest.fixture
def lcm_pipeline(text_encoder, unet, vae):
    """LCMPipeline wired to fake sessions."""
    return LCMPipeline(text_encoder, unet, vae, LCMScheduler())


@pytest.fixture
def fake_model_dir(tmp_path):
    """Model directory laid out like an optimum ONNX export (placeholder files)."""
    model_dir = tmp_path / "LCM-Dreamshaper-V7-ONNX"
    for relative, size in (
        ("text_encoder/model.onnx", 100),
        ("unet/model.onnx", 1000),
        ("vae_decoder/model.onnx", 10),
    ):
        path = model_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\0" * size)
    tokenizer_dir = model_dir / "tokenizer"
    tokenizer_dir.mkdir()
    (tokenizer_dir / "vocab.json").write_text("{}")
    (tokenizer_dir / "merges.txt").write_text("#version: 0.2\n")
    return model_dir


@pytest.fixture(scope="session")
def lcm_model_path():
    """Path to a real LCM ONNX model (from environment or skip)."""
    path = os.getenv("LCM_MODEL_PATH")
    if path is None:
        pytest.skip("LCM_MODEL_PATH not set")
    if not Path(path).exists():
        pytest.skip(f"LCM_MODEL_PATH does not exist: {path}")
    return path


@pytest.fixture
def output_dir(tmp_path):
    """Temporary output directory for generated images."""
    output = tmp_path / "output"
    output.mkdir()
    return output


@pytest.fixture
def test_config_file(tmp_path):
    """Create a temporary test config file."""
    config_path = tmp_path / "test_config.toml"
    config_path.write_text(
        """
[default]
model_path = "/test/path"
model_id = "fast"

[default.session]
provider = "cpu"
intra_op_num_threads = 4
graph_optimization = "extended"

[default.encoder]
max_length = 77

[default.generation]
width = 256
height = 384
steps = 2
guidance_scale = 1.5

[default.scheduler]
original_inference_steps = 50

[default.vae]
scaling_factor = 0.18215

[cuda]
model_path = "/test/path"

[cuda.session]
provider = "cuda"
device_id = 1
serialize_runs = false
"""
    )
    return config_path
