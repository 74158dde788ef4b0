"""ONNX model adapters for the denoiser and decoder."""

from lcm_imagegen.models.unet import UNetModel
from lcm_imagegen.models.vae import VaeDecoder

__all__ = ["UNetModel", "VaeDecoder"]
