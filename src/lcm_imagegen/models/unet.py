"""
UNet denoiser adapter for LCM / Stable Diffusion ONNX exports.

Input names differ between exporters (optimum, Olive, hand exports), so the
sample / timestep / conditioning inputs are resolved once at load time from
ordered candidate lists and cached for the adapter's lifetime.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import numpy as np
import torch

from lcm_imagegen.config import SessionConfig
from lcm_imagegen.runtime import (
    OnnxComponent,
    create_session,
    find_model_file,
    resolve_input_name,
)

logger = logging.getLogger(__name__)

SAMPLE_INPUT_CANDIDATES = ("sample", "latent_model_input", "x")
TIMESTEP_INPUT_CANDIDATES = ("timestep", "t", "timesteps")
ENCODER_INPUT_CANDIDATES = ("encoder_hidden_states", "context", "text_embeds")
TIMESTEP_COND_CANDIDATES = ("timestep_cond", "w_embedding")

UNET_FILE_CANDIDATES = ("unet/model.onnx", "unet.onnx", "lcm_unet.onnx")
UNET_FILE_PATTERNS = ("*unet*.onnx",)

DEFAULT_LATENT_CHANNELS = 4
DEFAULT_TIMESTEP_COND_DIM = 256


class UNetModel(OnnxComponent):
    """
    One forward pass per sampling step: (latent, timestep, conditioning) -> noise.

    Attributes:
        sample_input: Resolved name of the noisy-latent input
        timestep_input: Resolved name of the timestep input
        encoder_input: Resolved name of the conditioning input
        timestep_cond_input: Resolved guidance-embedding input, if declared
        latent_channels: Channel count of the sample input
    """

    component_name = "UNet"

    def __init__(self, session: Any, serialize_runs: bool = True):
        super().__init__(session, serialize_runs=serialize_runs)

        # Exact matches are taken for every role before any substring match,
        # and each resolved name leaves the pool, so short candidates ("t",
        # "x") cannot claim an input that belongs to another role.
        roles = (
            ("sample_input", SAMPLE_INPUT_CANDIDATES, "sample", True),
            ("encoder_input", ENCODER_INPUT_CANDIDATES, "encoder_hidden_states", True),
            ("timestep_cond_input", TIMESTEP_COND_CANDIDATES, "timestep_cond", False),
            ("timestep_input", TIMESTEP_INPUT_CANDIDATES, "timestep", True),
        )
        resolved: dict[str, Optional[str]] = {}
        remaining = self.input_names
        for substring in (False, True):
            for attr, candidates, role, required in roles:
                if resolved.get(attr) is not None:
                    continue
                name = resolve_input_name(
                    remaining,
                    candidates,
                    role,
                    required=required and substring,
                    substring=substring,
                )
                resolved[attr] = name
                if name is not None:
                    remaining.remove(name)

        self.sample_input = resolved["sample_input"]
        self.encoder_input = resolved["encoder_input"]
        self.timestep_cond_input = resolved["timestep_cond_input"]
        self.timestep_input = resolved["timestep_input"]
        self.output_name = self.output_names[0]

        sample_shape = self.input_shape(self.sample_input)
        channels = sample_shape[1] if len(sample_shape) > 1 else None
        self.latent_channels = channels if isinstance(channels, int) else DEFAULT_LATENT_CHANNELS

        logger.info(
            f"[UNet] inputs: sample={self.sample_input}, timestep={self.timestep_input}, "
            f"encoder={self.encoder_input}, timestep_cond={self.timestep_cond_input}, "
            f"latent_channels={self.latent_channels}"
        )

    @classmethod
    def from_pretrained(
        cls,
        model_dir: str | Path,
        session_config: Optional[SessionConfig] = None,
    ) -> "UNetModel":
        """Load the UNet from a model directory."""
        session_config = session_config or SessionConfig()
        model_path = find_model_file(
            model_dir, "UNet ONNX file", UNET_FILE_CANDIDATES, UNET_FILE_PATTERNS
        )
        session = create_session(model_path, session_config)
        return cls(session, serialize_runs=session_config.serialize_runs)

    @property
    def timestep_cond_dim(self) -> int:
        """Width of the guidance embedding input (0 if the model has none)."""
        if self.timestep_cond_input is None:
            return 0
        shape = self.input_shape(self.timestep_cond_input)
        dim = shape[-1] if shape else None
        return dim if isinstance(dim, int) else DEFAULT_TIMESTEP_COND_DIM

    def _timestep_array(self, timestep: int, batch_size: int) -> np.ndarray:
        dtype = self.input_dtype(self.timestep_input, default=np.int64)
        shape = self.input_shape(self.timestep_input)
        if len(shape) == 0:
            return np.array(timestep, dtype=dtype)
        if shape[0] == 1:
            return np.array([timestep], dtype=dtype)
        return np.full((batch_size,), timestep, dtype=dtype)

    def forward(
        self,
        latents: torch.Tensor,
        timestep: int,
        encoder_hidden_states: torch.Tensor,
        timestep_cond: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        Run a single UNet forward pass.

        Args:
            latents: Latent tensor [batch, channels, height, width]
            timestep: Current timestep
            encoder_hidden_states: Text encoder output [batch, seq_len, hidden]
            timestep_cond: Guidance embedding [batch, dim] (only for models
                that declare a timestep_cond input)

        Returns:
            Predicted noise tensor, float32, same shape as latents

        Raises:
            InferenceExecutionError: If the engine fails
        """
        batch_size = latents.shape[0]
        sample_dtype = self.input_dtype(self.sample_input)
        feeds = {
            self.sample_input: latents.numpy().astype(sample_dtype, copy=False),
            self.timestep_input: self._timestep_array(int(timestep), batch_size),
            self.encoder_input: encoder_hidden_states.numpy().astype(
                self.input_dtype(self.encoder_input), copy=False
            ),
        }
        if self.timestep_cond_input is not None:
            if timestep_cond is None:
                raise ValueError(
                    f"UNet declares '{self.timestep_cond_input}' but no timestep_cond was given"
                )
            feeds[self.timestep_cond_input] = timestep_cond.numpy().astype(
                self.input_dtype(self.timestep_cond_input), copy=False
            )

        outputs = self.run(feeds)
        noise_pred = torch.from_numpy(np.asarray(outputs[0], dtype=np.float32))

        if noise_pred.shape != latents.shape:
            logger.warning(
                f"[UNet] output shape {tuple(noise_pred.shape)} != input shape {tuple(latents.shape)}"
            )
        return noise_pred

    __call__ = forward
