"""
VAE decoder adapter: latents -> PNG bytes.
"""

import io
import logging
from pathlib import Path
from typing import Any, Optional

import numpy as np
import torch
from PIL import Image

from lcm_imagegen.config import SessionConfig, VaeConfig
from lcm_imagegen.runtime import (
    OnnxComponent,
    create_session,
    find_model_file,
    resolve_input_name,
)

logger = logging.getLogger(__name__)

VAE_FILE_CANDIDATES = ("vae_decoder/model.onnx", "vae_decoder.onnx", "decoder.onnx")
VAE_FILE_PATTERNS = ("*vae*decoder*.onnx", "*vae*.onnx")

LATENT_INPUT_CANDIDATES = ("latent_sample", "latent", "z", "sample")


class VaeDecoder(OnnxComponent):
    """
    Decodes final (or intermediate) latents into images.

    Every call is an independent full decode, so it serves both the final
    image and per-step previews.
    """

    component_name = "VAE"

    def __init__(
        self,
        session: Any,
        scaling_factor: float = 0.18215,
        serialize_runs: bool = True,
    ):
        super().__init__(session, serialize_runs=serialize_runs)
        self.scaling_factor = scaling_factor
        self.latent_input = resolve_input_name(
            self.input_names, LATENT_INPUT_CANDIDATES, "latent_sample"
        )

    @classmethod
    def from_pretrained(
        cls,
        model_dir: str | Path,
        session_config: Optional[SessionConfig] = None,
        vae_config: Optional[VaeConfig] = None,
    ) -> "VaeDecoder":
        session_config = session_config or SessionConfig()
        vae_config = vae_config or VaeConfig()
        model_path = find_model_file(
            model_dir, "VAE decoder ONNX file", VAE_FILE_CANDIDATES, VAE_FILE_PATTERNS
        )
        session = create_session(model_path, session_config)
        return cls(
            session,
            scaling_factor=vae_config.scaling_factor,
            serialize_runs=session_config.serialize_runs,
        )

    def decode_to_pil(self, latents: torch.Tensor) -> Image.Image:
        """
        Decode a [1, C, h, w] latent into an RGB image of size (8w, 8h).
        """
        scaled = latents / self.scaling_factor
        dtype = self.input_dtype(self.latent_input)
        outputs = self.run({self.latent_input: scaled.numpy().astype(dtype, copy=False)})

        image = torch.from_numpy(np.asarray(outputs[0], dtype=np.float32))
        # [-1, 1] -> [0, 1] -> uint8
        image = (image / 2 + 0.5).clamp(0, 1)
        image = image[0].permute(1, 2, 0).numpy()
        image = (image * 255).round().astype(np.uint8)
        return Image.fromarray(image)

    def decode(self, latents: torch.Tensor) -> bytes:
        """Decode latents and encode the result as PNG bytes."""
        buffer = io.BytesIO()
        self.decode_to_pil(latents).save(buffer, format="PNG")
        return buffer.getvalue()
