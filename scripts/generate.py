#!/usr/bin/env python3
"""
End-to-end LCM image generation script.

Usage:
    # Basic (4 steps, model defaults)
    uv run scripts/generate.py --model-path /path/to/LCM-Dreamshaper-V7-ONNX "A cat sleeping in sunlight"

    # With config file (recommended)
    uv run scripts/generate.py --config config.toml "A cat sleeping in sunlight"

    # With config profile
    uv run scripts/generate.py --config config.toml --profile cpu "A cat"

    # Reproducible batch: seeds 42, 43, 44
    uv run scripts/generate.py --model-path /path/to/model --seed 42 --count 3 "A cat"

    # Classifier-free guidance with a negative prompt
    uv run scripts/generate.py --model-path /path/to/model --guidance-scale 2.0 \\
        --negative-prompt "blurry, low quality" "A cat"

    # Stream steps and save a preview after each one
    uv run scripts/generate.py --model-path /path/to/model --steps 8 --previews "A cat"
"""

import sys

from lcm_imagegen.cli import main

if __name__ == "__main__":
    sys.exit(main())
