"""
Unit tests for CLI argument parsing and config overrides.
"""

import pytest

from lcm_imagegen.cli import (
    build_generation_options,
    create_base_parser,
    load_runtime_config,
    main,
)

pytestmark = pytest.mark.unit


def parse(*argv):
    return create_base_parser().parse_args(list(argv))


class TestParser:
    def test_defaults(self):
        args = parse()
        assert args.config is None
        assert args.profile == "default"
        assert args.provider is None
        assert args.debug is False

    def test_invalid_provider(self):
        with pytest.raises(SystemExit):
            parse("--provider", "tpu")


class TestLoadRuntimeConfig:
    def test_no_config_file(self):
        config = load_runtime_config(parse("--model-path", "/models/lcm", "--steps", "6"))
        assert config.model_path == "/models/lcm"
        assert config.generation.steps == 6
        assert config.session.provider == "auto"

    def test_cli_overrides_toml(self, test_config_file):
        config = load_runtime_config(
            parse(
                "--config", str(test_config_file),
                "--width", "512",
                "--provider", "cuda",
                "--threads", "2",
                "--no-serialize-runs",
                "--previews",
            )
        )
        assert config.model_path == "/test/path"
        assert config.generation.width == 512
        assert config.generation.height == 384
        assert config.generation.generate_previews is True
        assert config.session.provider == "cuda"
        assert config.session.intra_op_num_threads == 2
        assert config.session.graph_optimization == "extended"
        assert config.session.serialize_runs is False

    def test_profile(self, test_config_file):
        config = load_runtime_config(
            parse("--config", str(test_config_file), "--profile", "cuda")
        )
        assert config.session.device_id == 1

    def test_generation_options(self, test_config_file):
        args = parse("--config", str(test_config_file), "--seed", "3", "--negative-prompt", "blurry")
        options = build_generation_options(args, load_runtime_config(args))
        assert options.seed == 3
        assert options.negative_prompt == "blurry"
        assert (options.width, options.height, options.steps) == (256, 384, 2)
        assert options.guidance_scale == 1.5


class TestMain:
    def test_missing_model_path(self):
        assert main(["A cat"]) == 1

    def test_missing_config_file(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.toml"), "A cat"]) == 1

    def test_missing_model_files(self, tmp_path):
        assert main(["--model-path", str(tmp_path), "A cat"]) == 1
