"""
CLIP text encoder: tokenizer + ONNX text-encoder session.

Example:
    encoder = ClipTextEncoder.from_pretrained("/path/to/LCM-Dreamshaper-V7-ONNX")

    cond = encoder.encode("A cat sleeping in sunlight")  # [1, 77, 768]

    # With classifier-free guidance: [negative, positive]
    cond = encoder.encode_with_negative(
        "A cat sleeping in sunlight",
        negative_prompt="blurry",
        do_classifier_free_guidance=True,
    )  # [2, 77, 768]
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import numpy as np
import torch

from lcm_imagegen.config import EncoderConfig, SessionConfig
from lcm_imagegen.errors import ModelFileNotFoundError
from lcm_imagegen.runtime import (
    OnnxComponent,
    create_session,
    find_model_file,
    resolve_input_name,
)

logger = logging.getLogger(__name__)

TEXT_ENCODER_FILE_CANDIDATES = ("text_encoder/model.onnx", "text_encoder.onnx")
TEXT_ENCODER_FILE_PATTERNS = ("*text_encoder*.onnx",)

INPUT_IDS_CANDIDATES = ("input_ids", "tokens", "input")
ATTENTION_MASK_CANDIDATES = ("attention_mask",)
HIDDEN_STATE_OUTPUT = "last_hidden_state"


class Tokenizer(Protocol):
    """The slice of the transformers tokenizer API the encoder relies on."""

    def __call__(self, text: Any, **kwargs: Any) -> Dict[str, Any]: ...


class ClipTextEncoder(OnnxComponent):
    """
    Turns prompt text into the conditioning tensor consumed by the UNet.

    Attributes:
        tokenizer: CLIP BPE tokenizer
        max_length: Token sequence length (prompts are padded/truncated)
        input_ids_name: Resolved name of the token-id input
        attention_mask_name: Resolved attention-mask input, if declared
    """

    component_name = "TextEncoder"

    def __init__(
        self,
        session: Any,
        tokenizer: Tokenizer,
        max_length: int = 77,
        serialize_runs: bool = True,
    ):
        super().__init__(session, serialize_runs=serialize_runs)
        self.tokenizer = tokenizer
        self.max_length = max_length

        names = self.input_names
        self.input_ids_name = resolve_input_name(names, INPUT_IDS_CANDIDATES, "input_ids")
        self.attention_mask_name = resolve_input_name(
            [n for n in names if n != self.input_ids_name],
            ATTENTION_MASK_CANDIDATES,
            "attention_mask",
            required=False,
        )

        outputs = self.output_names
        self._output_index = (
            outputs.index(HIDDEN_STATE_OUTPUT) if HIDDEN_STATE_OUTPUT in outputs else 0
        )

    @classmethod
    def from_pretrained(
        cls,
        model_dir: str | Path,
        session_config: Optional[SessionConfig] = None,
        encoder_config: Optional[EncoderConfig] = None,
    ) -> "ClipTextEncoder":
        """
        Load tokenizer and text encoder from a model directory.

        Args:
            model_dir: Directory containing tokenizer/ and the text encoder ONNX file
            session_config: onnxruntime session settings
            encoder_config: Tokenizer subfolder and max length

        Returns:
            Initialized ClipTextEncoder

        Raises:
            ModelFileNotFoundError: If the ONNX file or tokenizer files are missing
        """
        from transformers import CLIPTokenizer

        session_config = session_config or SessionConfig()
        encoder_config = encoder_config or EncoderConfig()
        model_dir = Path(model_dir)

        model_path = find_model_file(
            model_dir,
            "text encoder ONNX file",
            TEXT_ENCODER_FILE_CANDIDATES,
            TEXT_ENCODER_FILE_PATTERNS,
        )

        tokenizer_dir = model_dir / encoder_config.tokenizer_subfolder
        required = ("vocab.json", "merges.txt")
        if not all((tokenizer_dir / name).is_file() for name in required):
            raise ModelFileNotFoundError(
                "CLIP tokenizer",
                str(model_dir),
                [f"{encoder_config.tokenizer_subfolder}/{name}" for name in required],
            )

        logger.info(f"[TextEncoder] Loading tokenizer from {tokenizer_dir}")
        tokenizer = CLIPTokenizer.from_pretrained(str(tokenizer_dir))

        session = create_session(model_path, session_config)
        return cls(
            session,
            tokenizer,
            max_length=encoder_config.max_length,
            serialize_runs=session_config.serialize_runs,
        )

    def encode(self, prompt: str) -> torch.Tensor:
        """
        Encode a single prompt.

        Returns:
            float32 tensor [1, max_length, hidden_dim]
        """
        tokens = self.tokenizer(
            prompt,
            padding="max_length",
            max_length=self.max_length,
            truncation=True,
            return_tensors="np",
        )
        id_dtype = self.input_dtype(self.input_ids_name, default=np.int64)
        feeds = {self.input_ids_name: np.asarray(tokens["input_ids"]).astype(id_dtype)}
        if self.attention_mask_name is not None:
            mask_dtype = self.input_dtype(self.attention_mask_name, default=np.int64)
            feeds[self.attention_mask_name] = np.asarray(tokens["attention_mask"]).astype(
                mask_dtype
            )

        outputs = self.run(feeds)
        hidden = torch.from_numpy(np.asarray(outputs[self._output_index], dtype=np.float32))
        logger.debug(f"[TextEncoder] '{prompt[:40]}' -> {tuple(hidden.shape)}")
        return hidden

    def encode_with_negative(
        self,
        prompt: str,
        negative_prompt: Optional[str] = None,
        do_classifier_free_guidance: bool = False,
    ) -> torch.Tensor:
        """
        Build the conditioning tensor for one generation call.

        Args:
            prompt: Positive prompt (must be non-empty)
            negative_prompt: Unconditional prompt (empty string if None)
            do_classifier_free_guidance: Stack [negative, positive] when True

        Returns:
            [1, L, D] without guidance, [2, L, D] (negative first) with guidance

        Raises:
            ValueError: If prompt is empty
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")

        positive = self.encode(prompt)
        if not do_classifier_free_guidance:
            return positive

        negative = self.encode(negative_prompt or "")
        return torch.cat([negative, positive], dim=0)
