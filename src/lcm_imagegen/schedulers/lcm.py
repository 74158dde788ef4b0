"""
Latent Consistency Model (LCM) scheduler.

Pure PyTorch implementation of the multi-step consistency sampler from
"Latent Consistency Models" (Luo et al. 2023), matching the reference
LCMScheduler shipped with diffusers for LCM Dreamshaper v7.

The scheduler owns only the fixed training-time noise schedule
(betas / alphas_cumprod). Inference schedules are returned from
set_timesteps() instead of being stored, so one scheduler instance can be
shared by concurrent generation calls.

Usage:
    from lcm_imagegen.schedulers import LCMScheduler

    scheduler = LCMScheduler()
    generator = torch.Generator().manual_seed(42)
    timesteps = scheduler.set_timesteps(4)
    latents = scheduler.create_noise((1, 4, 64, 64), generator)

    for t in timesteps:
        noise_pred = unet(scheduler.scale_model_input(latents, t), t, cond)
        latents = scheduler.step(noise_pred, t, latents, timesteps, generator).prev_sample
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import torch

from lcm_imagegen.config import SchedulerConfig

logger = logging.getLogger(__name__)


@dataclass
class LCMSchedulerOutput:
    """Output of scheduler step.

    Attributes:
        prev_sample: Latent for the next scheduled timestep (or the final
            latent on the last step)
        denoised: Consistency-model estimate of the clean latent
    """

    prev_sample: torch.Tensor
    denoised: torch.Tensor


def _get_betas(config: SchedulerConfig) -> torch.Tensor:
    if config.beta_schedule == "linear":
        return torch.linspace(
            config.beta_start,
            config.beta_end,
            config.num_train_timesteps,
            dtype=torch.float32,
        )
    elif config.beta_schedule == "scaled_linear":
        # Stable Diffusion schedule: linear in sqrt(beta)
        return (
            torch.linspace(
                config.beta_start**0.5,
                config.beta_end**0.5,
                config.num_train_timesteps,
                dtype=torch.float32,
            )
            ** 2
        )
    raise ValueError(f"Unknown beta schedule: {config.beta_schedule!r}")


class LCMScheduler:
    """
    Multi-step consistency sampler for LCM-distilled UNets.

    Each step turns the UNet's noise prediction into a clean-latent
    estimate using the consistency boundary scalings (c_skip, c_out), then
    re-noises that estimate to the next scheduled timestep. The last step
    returns the estimate directly.

    Attributes:
        config: Scheduler constants
        betas: Training beta schedule [num_train_timesteps]
        alphas_cumprod: Cumulative alpha products [num_train_timesteps]
        final_alpha_cumprod: alpha_cumprod used past the last timestep
        init_noise_sigma: Std of the initial latent noise
    """

    order = 1

    def __init__(self, config: Optional[SchedulerConfig] = None):
        self.config = config or SchedulerConfig()

        if self.config.num_train_timesteps % self.config.original_inference_steps:
            logger.warning(
                f"num_train_timesteps ({self.config.num_train_timesteps}) is not a "
                f"multiple of original_inference_steps ({self.config.original_inference_steps})"
            )

        self.betas = _get_betas(self.config)
        self.alphas = 1.0 - self.betas
        self.alphas_cumprod = torch.cumprod(self.alphas, dim=0)
        self.final_alpha_cumprod = (
            torch.tensor(1.0) if self.config.set_alpha_to_one else self.alphas_cumprod[0]
        )
        self.init_noise_sigma = 1.0

    @classmethod
    def from_pretrained(
        cls, model_dir: str | Path, config: Optional[SchedulerConfig] = None
    ) -> "LCMScheduler":
        """
        Load scheduler constants from model_dir/scheduler/scheduler_config.json.

        `config` is the base (the [scheduler] section of a profile); values
        in the model's scheduler_config.json override it. Without either,
        the LCM Dreamshaper v7 defaults are used.
        """
        config_path = Path(model_dir) / "scheduler" / "scheduler_config.json"
        if config_path.exists():
            logger.info(f"[Scheduler] Loading config from {config_path}")
            return cls(SchedulerConfig.from_json(config_path, base=config))
        logger.info("[Scheduler] No scheduler_config.json found, using configured values")
        return cls(config)

    def set_timesteps(self, num_inference_steps: int) -> torch.Tensor:
        """
        Select the inference timesteps, noisiest first.

        The LCM origin schedule is every (T / original_inference_steps)-th
        training timestep; num_inference_steps of those are picked at evenly
        spaced indices. Nothing on the scheduler is modified.

        Args:
            num_inference_steps: Number of denoising steps

        Returns:
            int64 tensor of exactly num_inference_steps strictly decreasing
            timesteps

        Raises:
            ValueError: If num_inference_steps is outside
                [1, original_inference_steps]
        """
        original_steps = self.config.original_inference_steps
        if num_inference_steps < 1:
            raise ValueError(
                f"num_inference_steps must be >= 1 (got {num_inference_steps})"
            )
        if num_inference_steps > original_steps:
            raise ValueError(
                f"num_inference_steps ({num_inference_steps}) cannot exceed "
                f"original_inference_steps ({original_steps}) for LCM sampling"
            )

        c = self.config.num_train_timesteps // original_steps
        lcm_origin_timesteps = torch.arange(1, original_steps + 1, dtype=torch.int64) * c - 1
        lcm_origin_timesteps = lcm_origin_timesteps.flip(0)

        # floor(linspace(0, n, steps, endpoint=False))
        indices = torch.div(
            torch.arange(num_inference_steps, dtype=torch.int64) * len(lcm_origin_timesteps),
            num_inference_steps,
            rounding_mode="floor",
        )
        timesteps = lcm_origin_timesteps[indices]

        logger.debug(f"[Scheduler] {num_inference_steps} steps: {timesteps.tolist()}")
        return timesteps

    @staticmethod
    def create_noise(
        shape: Sequence[int],
        generator: torch.Generator,
        init_noise_sigma: float = 1.0,
    ) -> torch.Tensor:
        """Draw reproducible standard-normal noise on CPU."""
        noise = torch.randn(tuple(shape), generator=generator, dtype=torch.float32)
        return noise * init_noise_sigma

    def scale_model_input(
        self,
        sample: torch.Tensor,
        timestep: Optional[int | torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        Scale model input (no-op for LCM).

        Provided so the pipeline loop stays scheduler-agnostic.
        """
        return sample

    def get_scalings_for_boundary_condition(self, timestep: int) -> tuple[float, float]:
        """
        Consistency boundary scalings (c_skip, c_out) for a discrete timestep.

        c_skip -> 1 and c_out -> 0 as t -> 0, so the model is the identity at
        the clean end of the trajectory.
        """
        sigma_data = self.config.sigma_data
        scaled_timestep = timestep * self.config.timestep_scaling
        c_skip = sigma_data**2 / (scaled_timestep**2 + sigma_data**2)
        c_out = scaled_timestep / (scaled_timestep**2 + sigma_data**2) ** 0.5
        return c_skip, c_out

    def _get_step_index(self, timestep: int, timesteps: torch.Tensor) -> int:
        matches = (timesteps == timestep).nonzero()
        if len(matches) == 0:
            raise ValueError(
                f"Timestep {timestep} is not part of the schedule {timesteps.tolist()}"
            )
        return int(matches[0].item())

    def _predict_original_sample(
        self,
        model_output: torch.Tensor,
        sample: torch.Tensor,
        alpha_prod_t: torch.Tensor,
    ) -> torch.Tensor:
        beta_prod_t = 1 - alpha_prod_t
        prediction_type = self.config.prediction_type
        if prediction_type == "epsilon":
            return (sample - beta_prod_t.sqrt() * model_output) / alpha_prod_t.sqrt()
        elif prediction_type == "sample":
            return model_output
        elif prediction_type == "v_prediction":
            return alpha_prod_t.sqrt() * sample - beta_prod_t.sqrt() * model_output
        raise ValueError(
            f"prediction_type must be one of epsilon, sample, v_prediction "
            f"(got {prediction_type})"
        )

    def step(
        self,
        model_output: torch.Tensor,
        timestep: int | torch.Tensor,
        sample: torch.Tensor,
        timesteps: torch.Tensor,
        generator: Optional[torch.Generator] = None,
    ) -> LCMSchedulerOutput:
        """
        Consistency-sampling update for one scheduled timestep.

        Args:
            model_output: Predicted noise (after CFG), same shape as sample
            timestep: Current timestep (must be an entry of timesteps)
            sample: Current noisy latent x_t
            timesteps: Schedule returned by set_timesteps()
            generator: Call-local generator for the re-injected noise

        Returns:
            LCMSchedulerOutput with the latent for the next timestep
        """
        t = int(timestep)
        step_index = self._get_step_index(t, timesteps)
        is_final = step_index == len(timesteps) - 1
        prev_timestep = t if is_final else int(timesteps[step_index + 1])

        alpha_prod_t = self.alphas_cumprod[t]
        alpha_prod_t_prev = (
            self.alphas_cumprod[prev_timestep] if prev_timestep >= 0 else self.final_alpha_cumprod
        )
        beta_prod_t_prev = 1 - alpha_prod_t_prev

        c_skip, c_out = self.get_scalings_for_boundary_condition(t)

        predicted_original_sample = self._predict_original_sample(
            model_output, sample, alpha_prod_t
        )
        if self.config.clip_sample:
            predicted_original_sample = predicted_original_sample.clamp(
                -self.config.clip_sample_range, self.config.clip_sample_range
            )

        denoised = c_out * predicted_original_sample + c_skip * sample

        if is_final:
            prev_sample = denoised
        else:
            noise = torch.randn(
                model_output.shape, generator=generator, dtype=model_output.dtype
            )
            prev_sample = alpha_prod_t_prev.sqrt() * denoised + beta_prod_t_prev.sqrt() * noise

        return LCMSchedulerOutput(prev_sample=prev_sample, denoised=denoised)


def get_guidance_scale_embedding(
    w: torch.Tensor,
    embedding_dim: int = 256,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """
    Sinusoidal embedding of the guidance scale for LCM-distilled UNets.

    LCM UNets with a timestep_cond input take this embedding of
    w = guidance_scale - 1 instead of running classifier-free guidance.

    Args:
        w: Guidance values [batch]
        embedding_dim: Embedding width declared by the UNet
        dtype: Output dtype

    Returns:
        Embedding tensor [batch, embedding_dim]
    """
    if w.ndim != 1:
        raise ValueError(f"w must be 1-D, got shape {tuple(w.shape)}")
    w = w * 1000.0

    half_dim = embedding_dim // 2
    emb = math.log(10000.0) / (half_dim - 1)
    emb = torch.exp(torch.arange(half_dim, dtype=dtype) * -emb)
    emb = w.to(dtype)[:, None] * emb[None, :]
    emb = torch.cat([torch.sin(emb), torch.cos(emb)], dim=1)
    if embedding_dim % 2 == 1:
        emb = torch.nn.functional.pad(emb, (0, 1))
    return emb
