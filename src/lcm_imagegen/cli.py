"""
Command-line argument parsing, configuration loading and the generate command.

Usage:
    from lcm_imagegen.cli import create_base_parser, load_runtime_config

    parser = create_base_parser()
    args = parser.parse_args()
    config = load_runtime_config(args)
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from lcm_imagegen.config import GRAPH_OPTIMIZATION_LEVELS, PROVIDER_MAP, Config
from lcm_imagegen.errors import LcmImageGenError
from lcm_imagegen.types import GenerationOptions

logger = logging.getLogger(__name__)


def create_base_parser(
    description: str = "LCM text-to-image generation (ONNX Runtime)",
    include_generation_args: bool = True,
) -> argparse.ArgumentParser:
    """
    Create the argument parser with all shared flags.

    Args:
        description: Parser description
        include_generation_args: Include generation params like --width, --steps

    Returns:
        ArgumentParser with all shared arguments
    """
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    config_group = parser.add_argument_group("Configuration")
    config_group.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to TOML config file",
    )
    config_group.add_argument(
        "--profile",
        type=str,
        default="default",
        help="Config profile to use (default: default)",
    )

    model_group = parser.add_argument_group("Model")
    model_group.add_argument(
        "--model-path",
        type=str,
        default=None,
        help="Local ONNX model directory (text_encoder/, unet/, vae_decoder/, tokenizer/)",
    )
    model_group.add_argument(
        "--model-id",
        type=str,
        default=None,
        help="Model alias for recommended defaults: default, fast, quality",
    )

    runtime_group = parser.add_argument_group("Runtime")
    runtime_group.add_argument(
        "--provider",
        type=str,
        choices=["auto", *PROVIDER_MAP],
        default=None,
        help="Execution provider (default: auto)",
    )
    runtime_group.add_argument(
        "--device-id",
        type=int,
        default=None,
        help="GPU device index for cuda/directml",
    )
    runtime_group.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Intra-op thread count (0 = onnxruntime default)",
    )
    runtime_group.add_argument(
        "--graph-optimization",
        type=str,
        choices=list(GRAPH_OPTIMIZATION_LEVELS),
        default=None,
        help="Graph optimization level (default: all)",
    )
    runtime_group.add_argument(
        "--no-serialize-runs",
        action="store_true",
        help="Allow concurrent session.run() calls on one session",
    )

    if include_generation_args:
        gen_group = parser.add_argument_group("Generation")
        gen_group.add_argument(
            "--width",
            type=int,
            default=None,
            help="Image width (default: 512, must be divisible by 8)",
        )
        gen_group.add_argument(
            "--height",
            type=int,
            default=None,
            help="Image height (default: 512, must be divisible by 8)",
        )
        gen_group.add_argument(
            "--steps",
            type=int,
            default=None,
            help="Number of inference steps (default: model recommendation)",
        )
        gen_group.add_argument(
            "--guidance-scale",
            type=float,
            default=None,
            help="CFG scale; values <= 1.0 disable CFG (default: model recommendation)",
        )
        gen_group.add_argument(
            "--negative-prompt",
            type=str,
            default=None,
            help="Negative prompt for CFG",
        )
        gen_group.add_argument(
            "--seed",
            type=int,
            default=None,
            help="Random seed for reproducibility",
        )
        gen_group.add_argument(
            "--previews",
            action="store_true",
            help="Save a preview image after every intermediate step (implies --stream)",
        )

    debug_group = parser.add_argument_group("Debug")
    debug_group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    debug_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Verbose output",
    )

    return parser


def load_runtime_config(args: argparse.Namespace) -> Config:
    """
    Load configuration from TOML file + CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. TOML config file
    3. Defaults
    """
    config = Config.from_toml(args.config, args.profile) if args.config else Config()

    if args.model_path is not None:
        config.model_path = args.model_path
    if args.model_id is not None:
        config.model_id = args.model_id

    session_overrides = {}
    if args.provider is not None:
        session_overrides["provider"] = args.provider
    if args.device_id is not None:
        session_overrides["device_id"] = args.device_id
    if args.threads is not None:
        session_overrides["intra_op_num_threads"] = args.threads
    if args.graph_optimization is not None:
        session_overrides["graph_optimization"] = args.graph_optimization
    if args.no_serialize_runs:
        session_overrides["serialize_runs"] = False
    if session_overrides:
        config.session = replace(config.session, **session_overrides)

    gen = config.generation
    if getattr(args, "width", None) is not None:
        gen.width = args.width
    if getattr(args, "height", None) is not None:
        gen.height = args.height
    if getattr(args, "steps", None) is not None:
        gen.steps = args.steps
    if getattr(args, "guidance_scale", None) is not None:
        gen.guidance_scale = args.guidance_scale
    if getattr(args, "previews", False):
        gen.generate_previews = True

    return config


def setup_logging(debug: bool = False, verbose: bool = False) -> None:
    """Configure logging for CLI use."""
    level = logging.DEBUG if debug or verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    if debug:
        logging.getLogger("lcm_imagegen").setLevel(logging.DEBUG)
    else:
        # onnxruntime / transformers are chatty at INFO
        logging.getLogger("transformers").setLevel(logging.WARNING)


def build_generation_options(args: argparse.Namespace, config: Config) -> GenerationOptions:
    """Combine config generation defaults with per-invocation flags."""
    gen = config.generation
    return GenerationOptions(
        negative_prompt=getattr(args, "negative_prompt", None),
        width=gen.width,
        height=gen.height,
        steps=gen.steps,
        guidance_scale=gen.guidance_scale,
        seed=getattr(args, "seed", None),
        generate_previews=gen.generate_previews,
    )


def _numbered_path(output: Path, index: int, count: int) -> Path:
    if count == 1:
        return output
    return output.with_name(f"{output.stem}_{index:03d}{output.suffix}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_base_parser(description="Generate images with an LCM ONNX model")
    parser.add_argument(
        "prompt",
        type=str,
        help="Text prompt for image generation",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="output.png",
        help="Output image path (default: output.png)",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of images; seeds increase by one per image (default: 1)",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Log progress after every denoising step",
    )
    parser.add_argument(
        "--warmup",
        action="store_true",
        help="Run a tiny warm-up generation before the real one",
    )

    args = parser.parse_args(argv)
    setup_logging(args.debug, args.verbose)

    try:
        config = load_runtime_config(args)
    except (FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if not config.model_path:
        logger.error("No model path specified. Use --model-path or --config.")
        return 1

    from lcm_imagegen.generator import load_image_generator

    options = build_generation_options(args, config)
    output = Path(args.output)

    try:
        with load_image_generator(config.model_path, config) as generator:
            info = generator.get_model_info()
            logger.info(
                f"Model: {info.model_name} ({info.architecture}, provider={info.provider})"
            )

            if args.warmup:
                result = generator.warmup()
                if not result.succeeded:
                    logger.warning(f"Warm-up failed: {result.error}")

            start = time.time()
            if args.stream or options.generate_previews:
                if args.count != 1:
                    logger.warning("--count is ignored when streaming")
                for step in generator.generate_streaming(args.prompt, options):
                    logger.info(
                        f"Step {step.step_number}/{step.total_steps} ({step.elapsed:.2f}s)"
                    )
                    if step.preview_data is not None:
                        preview_path = output.with_name(
                            f"{output.stem}_step{step.step_number:02d}{output.suffix}"
                        )
                        preview_path.write_bytes(step.preview_data)
                    if step.final_image is not None:
                        step.final_image.save(output)
                        logger.info(
                            f"Image saved to {output} (seed {step.final_image.seed})"
                        )
            else:
                images = generator.generate_batch(args.prompt, args.count, options)
                for i, image in enumerate(images):
                    path = image.save(_numbered_path(output, i, len(images)))
                    logger.info(f"Image saved to {path} (seed {image.seed})")
            logger.info(f"Generation time: {time.time() - start:.1f}s")
    except (LcmImageGenError, FileNotFoundError, KeyError, ValueError) as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
