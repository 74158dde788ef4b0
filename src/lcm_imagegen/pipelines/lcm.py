"""
LCM text-to-image pipeline over ONNX text encoder / UNet / VAE sessions.

Usage:
    pipe = LCMPipeline.from_pretrained("/path/to/LCM-Dreamshaper-V7-ONNX")

    image = pipe.generate(
        "A cat sleeping in sunlight",
        GenerationOptions(steps=4, seed=42),
    )
    image.save("cat.png")

    # Streaming with per-step previews
    for step in pipe.generate_streaming(
        "A cat sleeping in sunlight",
        GenerationOptions(steps=4, seed=42, generate_previews=True),
    ):
        print(step.step_number, step.total_steps, step.preview_data is not None)

All per-call state (latents, RNG, schedule, conditioning) lives inside the
call; the pipeline itself only holds the loaded sessions and the scheduler's
fixed noise schedule, so one instance can serve concurrent calls.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterator, Optional

import torch

from lcm_imagegen.config import Config
from lcm_imagegen.encoders.clip import ClipTextEncoder
from lcm_imagegen.errors import GenerationCancelledError
from lcm_imagegen.models.unet import UNetModel
from lcm_imagegen.models.vae import VaeDecoder
from lcm_imagegen.schedulers.lcm import LCMScheduler, get_guidance_scale_embedding
from lcm_imagegen.types import (
    VAE_SCALE_FACTOR,
    GeneratedImage,
    GenerationOptions,
    GenerationStep,
)

logger = logging.getLogger(__name__)

# Used when neither the caller nor the model definition provides a value
DEFAULT_NUM_INFERENCE_STEPS = 4
DEFAULT_GUIDANCE_SCALE = 1.0

MAX_SEED = 2**31 - 1


def random_seed() -> int:
    """Process-random seed in the non-negative int32 range."""
    return random.randint(0, MAX_SEED)


@dataclass
class _CallPlan:
    """Resolved, validated parameters for one generation call."""

    prompt: str
    options: GenerationOptions
    seed: int
    timesteps: torch.Tensor


class LCMPipeline:
    """
    Latent Consistency Model sampler driving three ONNX components.

    Attributes:
        text_encoder: Prompt -> conditioning
        unet: Noise predictor
        vae: Latent -> image decoder
        scheduler: LCM schedule and update rule
    """

    def __init__(
        self,
        text_encoder: ClipTextEncoder,
        unet: UNetModel,
        vae: VaeDecoder,
        scheduler: Optional[LCMScheduler] = None,
    ):
        self.text_encoder = text_encoder
        self.unet = unet
        self.vae = vae
        self.scheduler = scheduler or LCMScheduler()

    @classmethod
    def from_pretrained(
        cls,
        model_dir: str | Path,
        config: Optional[Config] = None,
    ) -> "LCMPipeline":
        """
        Load all components from an ONNX model directory.

        The three sessions are created concurrently; the first load error
        is re-raised after all loads have finished.

        Args:
            model_dir: Directory with text_encoder/, unet/, vae_decoder/, tokenizer/
            config: Runtime configuration (default: Config())

        Returns:
            Loaded LCMPipeline

        Raises:
            ModelFileNotFoundError: A component file is missing
            UnresolvedTensorNameError: A component's inputs cannot be mapped
        """
        config = config or Config()
        model_dir = Path(model_dir)
        if not model_dir.is_dir():
            raise FileNotFoundError(f"Model directory not found: {model_dir}")

        logger.info(f"[Pipeline] Loading LCM pipeline from {model_dir}")
        start = time.perf_counter()

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="lcm-load") as pool:
            encoder_future = pool.submit(
                ClipTextEncoder.from_pretrained, model_dir, config.session, config.encoder
            )
            unet_future = pool.submit(UNetModel.from_pretrained, model_dir, config.session)
            vae_future = pool.submit(
                VaeDecoder.from_pretrained, model_dir, config.session, config.vae
            )
            text_encoder = encoder_future.result()
            unet = unet_future.result()
            vae = vae_future.result()

        scheduler = LCMScheduler.from_pretrained(model_dir, config.scheduler)
        logger.info(f"[Pipeline] Loaded in {time.perf_counter() - start:.2f}s")
        return cls(text_encoder, unet, vae, scheduler)

    def _plan(self, prompt: str, options: Optional[GenerationOptions]) -> _CallPlan:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")

        options = options or GenerationOptions()
        options.validate()
        options = replace(
            options,
            steps=options.steps or DEFAULT_NUM_INFERENCE_STEPS,
            guidance_scale=options.guidance_scale or DEFAULT_GUIDANCE_SCALE,
        )
        timesteps = self.scheduler.set_timesteps(options.steps)
        seed = options.seed if options.seed is not None else random_seed()
        return _CallPlan(prompt=prompt, options=options, seed=seed, timesteps=timesteps)

    def _timestep_cond(self, batch_size: int) -> Optional[torch.Tensor]:
        if self.unet.timestep_cond_input is None:
            return None
        # Guidance is applied through CFG only; the distilled guidance
        # embedding gets the neutral w = 0.
        w = torch.zeros(batch_size, dtype=torch.float32)
        return get_guidance_scale_embedding(w, embedding_dim=self.unet.timestep_cond_dim)

    def _sample(
        self,
        plan: _CallPlan,
        cancel_event: Optional[threading.Event],
    ) -> Iterator[GenerationStep]:
        start = time.perf_counter()
        options = plan.options
        do_cfg = options.do_classifier_free_guidance
        total_steps = len(plan.timesteps)

        logger.info(
            f"[Pipeline] {options.width}x{options.height}, steps={total_steps}, "
            f"guidance={options.guidance_scale}, seed={plan.seed}, cfg={do_cfg}"
        )

        prompt_embeds = self.text_encoder.encode_with_negative(
            plan.prompt,
            negative_prompt=options.negative_prompt,
            do_classifier_free_guidance=do_cfg,
        )

        generator = torch.Generator().manual_seed(plan.seed)
        latent_shape = (
            1,
            self.unet.latent_channels,
            options.height // VAE_SCALE_FACTOR,
            options.width // VAE_SCALE_FACTOR,
        )
        latents = self.scheduler.create_noise(
            latent_shape, generator, self.scheduler.init_noise_sigma
        )
        timestep_cond = self._timestep_cond(prompt_embeds.shape[0])

        logger.debug(f"[Pipeline] Latent shape: {latent_shape}")
        logger.debug(f"[Pipeline] Timestep values: {plan.timesteps.tolist()}")

        for i, t in enumerate(plan.timesteps):
            step_number = i + 1
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[Pipeline] Cancelled before step {step_number}/{total_steps}")
                raise GenerationCancelledError(step_number, total_steps)

            t = int(t)
            latent_model_input = self.scheduler.scale_model_input(latents, t)
            if do_cfg:
                latent_model_input = torch.cat([latent_model_input] * 2)

            noise_pred = self.unet.forward(
                latent_model_input, t, prompt_embeds, timestep_cond=timestep_cond
            )

            if do_cfg:
                noise_pred_uncond, noise_pred_text = noise_pred.chunk(2)
                noise_pred = noise_pred_uncond + options.guidance_scale * (
                    noise_pred_text - noise_pred_uncond
                )

            output = self.scheduler.step(noise_pred, t, latents, plan.timesteps, generator)
            latents = output.prev_sample
            logger.debug(f"[Pipeline] Step {step_number}/{total_steps} (t={t})")

            if step_number < total_steps:
                preview = self.vae.decode(latents) if options.generate_previews else None
                yield GenerationStep(
                    step_number=step_number,
                    total_steps=total_steps,
                    elapsed=time.perf_counter() - start,
                    preview_data=preview,
                )
                continue

            image_data = self.vae.decode(latents)
            elapsed = time.perf_counter() - start
            logger.info(f"[Pipeline] Generated image in {elapsed:.2f}s")
            yield GenerationStep(
                step_number=step_number,
                total_steps=total_steps,
                elapsed=elapsed,
                final_image=GeneratedImage(
                    image_data=image_data,
                    width=options.width,
                    height=options.height,
                    seed=plan.seed,
                    steps=total_steps,
                    prompt=plan.prompt,
                    generation_time=elapsed,
                ),
            )

    def generate_streaming(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[GenerationStep]:
        """
        Generate an image, yielding one GenerationStep per denoising step.

        Options are validated immediately; inference only starts when the
        returned iterator is consumed. Non-final steps carry a preview when
        options.generate_previews is set; the last step carries the image.

        Raises:
            ValueError: Invalid prompt or options (raised before any inference)
            GenerationCancelledError: cancel_event was set (raised from the iterator)
        """
        plan = self._plan(prompt, options)
        return self._sample(plan, cancel_event)

    def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GeneratedImage:
        """
        Generate a single image.

        Args:
            prompt: Text prompt
            options: Generation options (zero steps / guidance use pipeline defaults)
            cancel_event: Checked before every denoising step

        Returns:
            GeneratedImage with PNG bytes and metadata

        Raises:
            ValueError: Invalid prompt or options
            GenerationCancelledError: cancel_event was set mid-generation
            InferenceExecutionError: A forward pass failed
        """
        plan = self._plan(prompt, options)
        # Previews are never decoded for a non-streaming call
        plan.options = replace(plan.options, generate_previews=False)

        final_image = None
        for step in self._sample(plan, cancel_event):
            final_image = step.final_image
        return final_image

    __call__ = generate

    def close(self) -> None:
        """Release all sessions."""
        for component in (self.text_encoder, self.unet, self.vae):
            component.close()
