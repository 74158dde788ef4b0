"""
Unit tests for data records and error types.
"""

import dataclasses

import pytest

from lcm_imagegen.errors import (
    GenerationCancelledError,
    InferenceExecutionError,
    LcmImageGenError,
    ModelFileNotFoundError,
    UnresolvedTensorNameError,
)
from lcm_imagegen.types import GeneratedImage, GenerationOptions, GenerationStep

pytestmark = pytest.mark.unit


class TestGenerationOptions:
    def test_defaults(self):
        options = GenerationOptions()
        assert (options.width, options.height) == (512, 512)
        assert options.steps == 0
        assert options.guidance_scale == 0.0
        assert options.seed is None
        assert not options.do_classifier_free_guidance

    def test_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            GenerationOptions().steps = 4

    def test_with_seed(self):
        options = GenerationOptions(steps=4, negative_prompt="blurry")
        seeded = options.with_seed(5)
        assert seeded.seed == 5
        assert seeded.negative_prompt == "blurry"
        assert options.seed is None

    @pytest.mark.parametrize("guidance_scale,expected", [(0.0, False), (1.0, False), (1.01, True)])
    def test_cfg_threshold(self, guidance_scale, expected):
        assert GenerationOptions(guidance_scale=guidance_scale).do_classifier_free_guidance is expected

    def test_validate_accepts_multiples_of_eight(self):
        GenerationOptions(width=8, height=1024).validate()

    @pytest.mark.parametrize("width,height", [(513, 512), (512, 4), (0, 512), (-8, 512)])
    def test_validate_rejects_bad_sizes(self, width, height):
        with pytest.raises(ValueError):
            GenerationOptions(width=width, height=height).validate()


class TestGeneratedImage:
    def test_save(self, tmp_path):
        image = GeneratedImage(
            image_data=b"\x89PNG fake",
            width=8,
            height=8,
            seed=1,
            steps=1,
            prompt="x",
            generation_time=0.1,
        )
        path = image.save(tmp_path / "nested" / "out.png")
        assert path.read_bytes() == b"\x89PNG fake"

    def test_step_is_final(self):
        assert GenerationStep(step_number=4, total_steps=4, elapsed=1.0).is_final
        assert not GenerationStep(step_number=3, total_steps=4, elapsed=1.0).is_final


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(ModelFileNotFoundError, FileNotFoundError)
        assert issubclass(UnresolvedTensorNameError, LookupError)
        assert issubclass(InferenceExecutionError, RuntimeError)
        for cls in (
            ModelFileNotFoundError,
            UnresolvedTensorNameError,
            GenerationCancelledError,
            InferenceExecutionError,
        ):
            assert issubclass(cls, LcmImageGenError)

    def test_cancelled_is_not_execution_failure(self):
        err = GenerationCancelledError(3, 4)
        assert not isinstance(err, RuntimeError)
        assert "3/4" in str(err)
