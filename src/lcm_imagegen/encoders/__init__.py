"""Text encoders producing UNet conditioning."""

from lcm_imagegen.encoders.clip import ClipTextEncoder

__all__ = ["ClipTextEncoder"]
