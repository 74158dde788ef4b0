"""
Data records passed in and out of the LCM generation pipeline.

All records are immutable. Options go in, GeneratedImage / GenerationStep
come out, ModelDefinition describes a model's recommended defaults.
"""

import io
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image

DEFAULT_IMAGE_SIZE = 512

# Latent spatial dims are image dims divided by this factor
VAE_SCALE_FACTOR = 8


@dataclass(frozen=True)
class GenerationOptions:
    """
    Per-call generation options.

    Zero-valued steps / guidance_scale mean "use the model's recommended
    value"; the generator fills them in before the pipeline runs.

    Attributes:
        negative_prompt: Prompt to steer away from (only used with CFG)
        width: Output width in pixels, positive multiple of 8
        height: Output height in pixels, positive multiple of 8
        steps: Number of denoising steps (0 = model default)
        guidance_scale: CFG scale (0 = model default, <=1 disables CFG)
        seed: Random seed (None = random per call)
        generate_previews: Decode a preview after every non-final step
    """

    negative_prompt: Optional[str] = None
    width: int = DEFAULT_IMAGE_SIZE
    height: int = DEFAULT_IMAGE_SIZE
    steps: int = 0
    guidance_scale: float = 0.0
    seed: Optional[int] = None
    generate_previews: bool = False

    def validate(self) -> None:
        """Reject option values that can never produce an image."""
        for name, value in (("width", self.width), ("height", self.height)):
            if value <= 0:
                raise ValueError(f"{name} must be positive (got {value})")
            if value % VAE_SCALE_FACTOR != 0:
                raise ValueError(
                    f"{name} must be divisible by {VAE_SCALE_FACTOR} (got {value})"
                )
        if self.steps < 0:
            raise ValueError(f"steps must be >= 0 (got {self.steps})")
        if self.guidance_scale < 0:
            raise ValueError(
                f"guidance_scale must be >= 0 (got {self.guidance_scale})"
            )

    def with_seed(self, seed: int) -> "GenerationOptions":
        return replace(self, seed=seed)

    @property
    def do_classifier_free_guidance(self) -> bool:
        return self.guidance_scale > 1.0


@dataclass(frozen=True)
class GeneratedImage:
    """A finished image plus the parameters that produced it."""

    image_data: bytes
    width: int
    height: int
    seed: int
    steps: int
    prompt: str
    generation_time: float

    def to_pil(self) -> Image.Image:
        return Image.open(io.BytesIO(self.image_data))

    def save(self, path: str | Path) -> Path:
        """Write the PNG bytes to disk."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.image_data)
        return path


@dataclass(frozen=True)
class GenerationStep:
    """
    One streamed denoising step.

    preview_data is only set for non-final steps when previews were
    requested; final_image is only set on the last step.
    """

    step_number: int
    total_steps: int
    elapsed: float
    preview_data: Optional[bytes] = None
    final_image: Optional[GeneratedImage] = None

    @property
    def is_final(self) -> bool:
        return self.step_number == self.total_steps


@dataclass(frozen=True)
class ModelDefinition:
    """Static metadata and recommended defaults for a known model."""

    model_id: str
    friendly_name: str
    recommended_steps: int = 4
    recommended_guidance_scale: float = 1.0
    default_width: int = DEFAULT_IMAGE_SIZE
    default_height: int = DEFAULT_IMAGE_SIZE
    aliases: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ImageGeneratorModelInfo:
    """Description of a loaded generator."""

    model_id: str
    model_name: Optional[str]
    architecture: str
    provider: str
    default_width: int
    default_height: int
    recommended_steps: int
    recommended_guidance_scale: float
    model_path: Optional[str] = None
    model_size_bytes: Optional[int] = None

    @property
    def description(self) -> str:
        return f"{self.architecture} image generator"


@dataclass(frozen=True)
class WarmupResult:
    """
    Outcome of a best-effort warm-up run.

    A failed warm-up never raises; callers may inspect `error` if they care.
    """

    succeeded: bool
    elapsed: float = 0.0
    error: Optional[str] = None
    skipped: bool = False
