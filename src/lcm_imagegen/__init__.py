"""
lcm-imagegen: on-device text-to-image with Latent Consistency Models on ONNX Runtime.

Core components:
- schedulers: LCM timestep schedule and consistency update
- encoders: CLIP text encoder over an ONNX session
- models: UNet and VAE decoder ONNX adapters
- pipelines: LCM sampling loop with CFG and streaming
- generator: model defaults, warm-up, batch and asyncio entry points
"""

__version__ = "0.1.0"

from lcm_imagegen.config import Config, load_config
from lcm_imagegen.errors import (
    GenerationCancelledError,
    InferenceExecutionError,
    LcmImageGenError,
    ModelFileNotFoundError,
    UnresolvedTensorNameError,
)
from lcm_imagegen.generator import (
    WELL_KNOWN_MODELS,
    OnnxImageGenerator,
    aload_image_generator,
    load_image_generator,
    resolve_model_definition,
)
from lcm_imagegen.types import (
    GeneratedImage,
    GenerationOptions,
    GenerationStep,
    ImageGeneratorModelInfo,
    ModelDefinition,
    WarmupResult,
)

__all__ = [
    "__version__",
    "Config",
    "load_config",
    "LcmImageGenError",
    "ModelFileNotFoundError",
    "UnresolvedTensorNameError",
    "GenerationCancelledError",
    "InferenceExecutionError",
    "OnnxImageGenerator",
    "WELL_KNOWN_MODELS",
    "load_image_generator",
    "aload_image_generator",
    "resolve_model_definition",
    "GeneratedImage",
    "GenerationOptions",
    "GenerationStep",
    "ImageGeneratorModelInfo",
    "ModelDefinition",
    "WarmupResult",
]
