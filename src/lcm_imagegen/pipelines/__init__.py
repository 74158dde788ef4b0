"""Generation pipelines."""

from lcm_imagegen.pipelines.lcm import LCMPipeline

__all__ = ["LCMPipeline"]
