"""
High-level image generator: model definitions, defaults and lifecycle.

Wraps an LCMPipeline with per-model recommended settings, warm-up, model
info, batch generation and asyncio entry points.

Example:
    from lcm_imagegen import GenerationOptions, load_image_generator

    with load_image_generator("/models/LCM-Dreamshaper-V7-ONNX") as generator:
        generator.warmup()
        image = generator.generate("A sunset over mountains", GenerationOptions(seed=7))
        image.save("sunset.png")

    # asyncio
    generator = await aload_image_generator("/models/LCM-Dreamshaper-V7-ONNX")
    async for step in generator.agenerate_streaming("A sunset", GenerationOptions(steps=4)):
        ...
"""

import asyncio
import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import AsyncIterator, Dict, Iterator, List, Optional

from lcm_imagegen.config import Config
from lcm_imagegen.pipelines.lcm import LCMPipeline, random_seed
from lcm_imagegen.types import (
    GeneratedImage,
    GenerationOptions,
    GenerationStep,
    ImageGeneratorModelInfo,
    ModelDefinition,
    WarmupResult,
)

logger = logging.getLogger(__name__)

ARCHITECTURE = "LCM"
DREAMSHAPER_REPO_ID = "TheyCallMeHex/LCM-Dreamshaper-V7-ONNX"

WELL_KNOWN_MODELS: Dict[str, ModelDefinition] = {
    "default": ModelDefinition(
        model_id=DREAMSHAPER_REPO_ID,
        friendly_name="LCM Dreamshaper v7",
        recommended_steps=4,
        recommended_guidance_scale=1.0,
        aliases=("default", "dreamshaper", "lcm-dreamshaper"),
    ),
    "fast": ModelDefinition(
        model_id=DREAMSHAPER_REPO_ID,
        friendly_name="LCM Dreamshaper v7 (fast)",
        recommended_steps=2,
        recommended_guidance_scale=1.0,
        aliases=("fast",),
    ),
    "quality": ModelDefinition(
        model_id=DREAMSHAPER_REPO_ID,
        friendly_name="LCM Dreamshaper v7 (quality)",
        recommended_steps=8,
        recommended_guidance_scale=1.5,
        aliases=("quality",),
    ),
}

# Settings for the warm-up generation
WARMUP_OPTIONS = GenerationOptions(width=64, height=64, steps=1, guidance_scale=1.0, seed=0)
WARMUP_PROMPT = "warmup"

# ONNX weights are roughly doubled in memory once sessions are initialized
MEMORY_OVERHEAD_FACTOR = 2


def resolve_model_definition(name: str) -> Optional[ModelDefinition]:
    """
    Look up a well-known model by alias or repo id (case-insensitive).

    Returns None for unknown names.
    """
    key = name.strip().lower()
    if key in WELL_KNOWN_MODELS:
        return WELL_KNOWN_MODELS[key]
    for definition in WELL_KNOWN_MODELS.values():
        if key in (alias.lower() for alias in definition.aliases):
            return definition
    for definition in WELL_KNOWN_MODELS.values():
        if key == definition.model_id.lower():
            return definition
    return None


def local_model_definition(model_path: str | Path) -> ModelDefinition:
    """Definition for an arbitrary local LCM export (LCM defaults)."""
    name = Path(model_path).name
    return ModelDefinition(model_id=name, friendly_name=name)


class OnnxImageGenerator:
    """
    Public entry point for text-to-image generation.

    Zero-valued steps / guidance_scale in the caller's options are replaced
    by the model definition's recommended values before the pipeline runs.
    When no options are passed at all, Config.generation supplies them.
    """

    def __init__(
        self,
        pipeline: LCMPipeline,
        definition: ModelDefinition,
        config: Optional[Config] = None,
        model_path: Optional[str | Path] = None,
    ):
        self.pipeline = pipeline
        self.definition = definition
        self.config = config or Config()
        self.model_path = Path(model_path) if model_path is not None else None
        self._warmed_up = False
        self._closed = False

    @property
    def model_id(self) -> str:
        return self.definition.model_id

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Image generator has been closed")

    def _default_options(self) -> GenerationOptions:
        gen = self.config.generation
        return GenerationOptions(
            width=gen.width,
            height=gen.height,
            steps=gen.steps,
            guidance_scale=gen.guidance_scale,
            generate_previews=gen.generate_previews,
        )

    def _apply_model_defaults(self, options: Optional[GenerationOptions]) -> GenerationOptions:
        options = options or self._default_options()
        options.validate()
        return replace(
            options,
            steps=options.steps if options.steps > 0 else self.definition.recommended_steps,
            guidance_scale=(
                options.guidance_scale
                if options.guidance_scale > 0
                else self.definition.recommended_guidance_scale
            ),
        )

    def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GeneratedImage:
        """Generate one image (blocking)."""
        self._check_open()
        return self.pipeline.generate(prompt, self._apply_model_defaults(options), cancel_event)

    def generate_batch(
        self,
        prompt: str,
        count: int,
        options: Optional[GenerationOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[GeneratedImage]:
        """
        Generate count images sequentially with seeds base_seed + i.

        base_seed is options.seed, or a process-random seed when unset, so
        each image can be reproduced on its own with generate().

        Raises:
            ValueError: If count < 1 or options are invalid
        """
        self._check_open()
        if count < 1:
            raise ValueError(f"count must be >= 1 (got {count})")
        options = self._apply_model_defaults(options)
        base_seed = options.seed if options.seed is not None else random_seed()

        logger.info(f"[Generator] Batch of {count}, base seed {base_seed}")
        return [
            self.pipeline.generate(prompt, options.with_seed(base_seed + i), cancel_event)
            for i in range(count)
        ]

    def generate_streaming(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[GenerationStep]:
        """Stream one GenerationStep per denoising step."""
        self._check_open()
        return self.pipeline.generate_streaming(
            prompt, self._apply_model_defaults(options), cancel_event
        )

    async def agenerate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedImage:
        """
        asyncio variant of generate().

        Cancelling the awaiting task stops the worker thread at the next
        step boundary.
        """
        cancel_event = threading.Event()
        try:
            return await asyncio.to_thread(self.generate, prompt, options, cancel_event)
        except asyncio.CancelledError:
            cancel_event.set()
            raise

    async def agenerate_batch(
        self,
        prompt: str,
        count: int,
        options: Optional[GenerationOptions] = None,
    ) -> List[GeneratedImage]:
        cancel_event = threading.Event()
        try:
            return await asyncio.to_thread(
                self.generate_batch, prompt, count, options, cancel_event
            )
        except asyncio.CancelledError:
            cancel_event.set()
            raise

    async def agenerate_streaming(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[GenerationStep]:
        """
        asyncio variant of generate_streaming().

        Each step is computed in a worker thread; steps are yielded as they
        complete.
        """
        cancel_event = threading.Event()
        steps = self.generate_streaming(prompt, options, cancel_event)
        done = object()
        try:
            while True:
                step = await asyncio.to_thread(next, steps, done)
                if step is done:
                    break
                yield step
        except asyncio.CancelledError:
            cancel_event.set()
            raise

    def warmup(self) -> WarmupResult:
        """
        Run one tiny generation so the sessions allocate their buffers.

        Best effort: failures are reported in the result, never raised.
        Only the first successful call does any work.
        """
        self._check_open()
        if self._warmed_up:
            return WarmupResult(succeeded=True, skipped=True)

        start = time.perf_counter()
        try:
            self.pipeline.generate(WARMUP_PROMPT, WARMUP_OPTIONS)
        except Exception as e:
            elapsed = time.perf_counter() - start
            logger.warning(f"[Generator] Warm-up failed after {elapsed:.2f}s: {e}")
            return WarmupResult(succeeded=False, elapsed=elapsed, error=str(e))

        elapsed = time.perf_counter() - start
        self._warmed_up = True
        logger.info(f"[Generator] Warm-up finished in {elapsed:.2f}s")
        return WarmupResult(succeeded=True, elapsed=elapsed)

    @property
    def model_size_bytes(self) -> Optional[int]:
        """Total size of the *.onnx files under model_path."""
        if self.model_path is None or not self.model_path.is_dir():
            return None
        return sum(p.stat().st_size for p in self.model_path.rglob("*.onnx") if p.is_file())

    @property
    def estimated_memory_bytes(self) -> Optional[int]:
        """Rough runtime memory estimate: total ONNX file size times two."""
        size = self.model_size_bytes
        return None if size is None else size * MEMORY_OVERHEAD_FACTOR

    def get_model_info(self) -> ImageGeneratorModelInfo:
        session = self.pipeline.unet.session
        providers = session.get_providers() if session is not None else []
        return ImageGeneratorModelInfo(
            model_id=self.definition.model_id,
            model_name=self.definition.friendly_name,
            architecture=ARCHITECTURE,
            provider=providers[0] if providers else self.config.session.provider,
            default_width=self.definition.default_width,
            default_height=self.definition.default_height,
            recommended_steps=self.definition.recommended_steps,
            recommended_guidance_scale=self.definition.recommended_guidance_scale,
            model_path=str(self.model_path) if self.model_path is not None else None,
            model_size_bytes=self.model_size_bytes,
        )

    def close(self) -> None:
        if self._closed:
            return
        self.pipeline.close()
        self._closed = True
        logger.info(f"[Generator] Closed {self.definition.model_id}")

    def __enter__(self) -> "OnnxImageGenerator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def load_image_generator(
    model_id_or_path: Optional[str | Path] = None,
    config: Optional[Config] = None,
    definition: Optional[ModelDefinition] = None,
) -> OnnxImageGenerator:
    """
    Load an image generator from a local model directory.

    Args:
        model_id_or_path: A model directory, or a well-known alias / repo id
            whose files live at config.model_path. Defaults to config.model_path.
        config: Runtime configuration (default: Config())
        definition: Explicit model definition (overrides alias lookup)

    Returns:
        Loaded OnnxImageGenerator

    Raises:
        KeyError: Unknown alias
        FileNotFoundError: No local model directory could be determined
    """
    config = config or Config()
    target = model_id_or_path if model_id_or_path is not None else config.model_path

    if target and Path(target).is_dir():
        model_path = Path(target)
        if definition is None:
            definition = resolve_model_definition(config.model_id) or local_model_definition(
                model_path
            )
    else:
        name = str(target) if target else config.model_id
        if definition is None:
            definition = resolve_model_definition(name)
            if definition is None:
                raise KeyError(
                    f"Unknown model: {name}. Known aliases: {list(WELL_KNOWN_MODELS)}"
                )
        if not config.model_path or not Path(config.model_path).is_dir():
            raise FileNotFoundError(
                f"No local model directory for '{name}'. Download "
                f"{definition.model_id} and set model_path to its directory."
            )
        model_path = Path(config.model_path)

    logger.info(f"[Generator] Loading {definition.friendly_name} from {model_path}")
    pipeline = LCMPipeline.from_pretrained(model_path, config)
    return OnnxImageGenerator(pipeline, definition, config, model_path)


async def aload_image_generator(
    model_id_or_path: Optional[str | Path] = None,
    config: Optional[Config] = None,
    definition: Optional[ModelDefinition] = None,
) -> OnnxImageGenerator:
    """asyncio variant of load_image_generator() (loads in a worker thread)."""
    return await asyncio.to_thread(load_image_generator, model_id_or_path, config, definition)
