"""
Schedulers for LCM sampling.

Provides a pure PyTorch LCM scheduler, independent of the diffusers library.
"""

from lcm_imagegen.schedulers.lcm import (
    LCMScheduler,
    LCMSchedulerOutput,
    get_guidance_scale_embedding,
)

__all__ = ["LCMScheduler", "LCMSchedulerOutput", "get_guidance_scale_embedding"]
