"""
TOML-based configuration for lcm-imagegen.

Supports profiles for different hardware configurations, including:
- Execution provider selection (cpu, cuda, directml, coreml, auto)
- Thread counts and graph optimization level for onnxruntime
- Default generation parameters and scheduler constants

Example config (config.toml):

    [default]
    model_path = "/path/to/LCM-Dreamshaper-V7-ONNX"
    model_id = "default"

    [default.session]
    provider = "auto"
    intra_op_num_threads = 0

    [default.generation]
    width = 512
    height = 512
    steps = 4

    [cpu]
    model_path = "/path/to/LCM-Dreamshaper-V7-ONNX"

    [cpu.session]
    provider = "cpu"
    intra_op_num_threads = 8
"""

import copy
import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, List

logger = logging.getLogger(__name__)

# Try to import tomllib (Python 3.11+) or tomli
try:
    import tomllib
except ImportError:
    try:
        import tomli as tomllib
    except ImportError:
        tomllib = None


# Provider name -> onnxruntime execution provider
PROVIDER_MAP = {
    "cpu": "CPUExecutionProvider",
    "cuda": "CUDAExecutionProvider",
    "directml": "DmlExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
}

# Preference order when provider = "auto"
AUTO_PROVIDER_ORDER = ("cuda", "directml", "coreml", "cpu")

GRAPH_OPTIMIZATION_LEVELS = ("disabled", "basic", "extended", "all")


@dataclass
class SessionConfig:
    """Configuration for onnxruntime inference sessions.

    Provider Options:
    - "auto": First available of cuda, directml, coreml, then cpu
    - "cpu", "cuda", "directml", "coreml": Explicit provider. If the
      installed onnxruntime build does not offer it, sessions fall back
      to CPU with a warning.

    serialize_runs:
        When True (default), each adapter serializes session.run() through
        a lock so concurrent generation calls never share a session at the
        same time. Set to False only if the engine build is known to allow
        concurrent Run calls on one session.
    """

    provider: str = "auto"  # auto, cpu, cuda, directml, coreml
    device_id: int = 0
    intra_op_num_threads: int = 0  # 0 = onnxruntime default
    inter_op_num_threads: int = 0
    graph_optimization: str = "all"  # disabled, basic, extended, all
    log_severity_level: int = 2  # 0=verbose .. 4=fatal
    serialize_runs: bool = True

    def __post_init__(self):
        if self.provider != "auto" and self.provider not in PROVIDER_MAP:
            raise ValueError(
                f"Unknown provider: {self.provider}. "
                f"Valid options: auto, {', '.join(PROVIDER_MAP)}"
            )
        if self.graph_optimization not in GRAPH_OPTIMIZATION_LEVELS:
            raise ValueError(
                f"graph_optimization must be one of {GRAPH_OPTIMIZATION_LEVELS}, "
                f"got {self.graph_optimization}"
            )

    def get_providers(self, available: List[str]) -> List[str]:
        """
        Resolve the provider list to hand to onnxruntime.

        Args:
            available: Output of onnxruntime.get_available_providers()

        Returns:
            Ordered provider names, always ending in CPUExecutionProvider
        """
        if self.provider == "auto":
            candidates = [PROVIDER_MAP[name] for name in AUTO_PROVIDER_ORDER]
        else:
            candidates = [PROVIDER_MAP[self.provider]]

        providers = [p for p in candidates if p in available]
        if self.provider not in ("auto", "cpu") and not providers:
            logger.warning(
                f"Provider '{self.provider}' not available "
                f"(available: {available}), falling back to CPU"
            )
        if "CPUExecutionProvider" not in providers:
            providers.append("CPUExecutionProvider")
        return providers


@dataclass
class EncoderConfig:
    """Configuration for the CLIP text encoder."""

    max_length: int = 77
    tokenizer_subfolder: str = "tokenizer"


@dataclass
class GenerationConfig:
    """Default generation parameters.

    steps / guidance_scale of 0 defer to the model definition's
    recommended values.
    """

    width: int = 512
    height: int = 512
    steps: int = 0
    guidance_scale: float = 0.0
    generate_previews: bool = False


@dataclass
class SchedulerConfig:
    """LCM scheduler constants.

    Defaults match the scheduler_config.json shipped with LCM Dreamshaper v7.
    """

    num_train_timesteps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: str = "scaled_linear"  # linear, scaled_linear
    original_inference_steps: int = 50
    prediction_type: str = "epsilon"  # epsilon, sample, v_prediction
    set_alpha_to_one: bool = True
    timestep_scaling: float = 10.0
    sigma_data: float = 0.5
    clip_sample: bool = False
    clip_sample_range: float = 1.0

    @classmethod
    def from_json(
        cls, path: str | Path, base: "SchedulerConfig | None" = None
    ) -> "SchedulerConfig":
        """
        Load a diffusers-style scheduler_config.json.

        Values in the file override `base` (the defaults when None).

        Keys that this scheduler does not use (_class_name, steps_offset,
        rescale_betas_zero_snr, ...) are ignored.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        known = {f.name for f in fields(cls)}
        ignored = sorted(k for k in data if k not in known)
        if ignored:
            logger.debug(f"Ignoring scheduler config keys: {ignored}")
        return replace(base or cls(), **{k: v for k, v in data.items() if k in known})


@dataclass
class VaeConfig:
    """VAE decoder settings."""

    scaling_factor: float = 0.18215


@dataclass
class Config:
    """Complete configuration for LCM image generation."""

    model_path: str = ""
    model_id: str = "default"

    session: SessionConfig = field(default_factory=SessionConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    vae: VaeConfig = field(default_factory=VaeConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        data = dict(data)
        session_data = data.pop("session", {})
        encoder_data = data.pop("encoder", {})
        generation_data = data.pop("generation", {})
        scheduler_data = data.pop("scheduler", {})
        vae_data = data.pop("vae", {})

        return cls(
            model_path=data.get("model_path", ""),
            model_id=data.get("model_id", "default"),
            session=SessionConfig(**session_data),
            encoder=EncoderConfig(**encoder_data),
            generation=GenerationConfig(**generation_data),
            scheduler=SchedulerConfig(**scheduler_data),
            vae=VaeConfig(**vae_data),
        )

    @classmethod
    def from_toml(cls, path: str | Path, profile: str = "default") -> "Config":
        """
        Load config from TOML file.

        Args:
            path: Path to TOML config file
            profile: Profile name to load (default: "default")

        Returns:
            Loaded Config
        """
        if tomllib is None:
            raise ImportError(
                "tomllib/tomli required for TOML config. "
                "Install with: pip install tomli (Python <3.11)"
            )

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        if profile not in data:
            available = list(data.keys())
            raise KeyError(
                f"Profile '{profile}' not found in config. "
                f"Available: {available}"
            )

        logger.info(f"Loaded config profile: {profile}")
        return cls.from_dict(data[profile])

    def to_dict(self) -> dict[str, Any]:
        """Serialize config to dictionary."""
        return asdict(self)


# Preset configurations
PRESETS = {
    "default": Config(),
    "cpu_only": Config(session=SessionConfig(provider="cpu")),
    "cuda": Config(session=SessionConfig(provider="cuda")),
}


def get_preset(name: str) -> Config:
    """Get a preset configuration by name."""
    if name not in PRESETS:
        raise KeyError(f"Unknown preset: {name}. Available: {list(PRESETS.keys())}")
    return copy.deepcopy(PRESETS[name])


def load_config(
    path: str | Path | None = None,
    profile: str = "default",
    preset: str | None = None,
) -> Config:
    """
    Load configuration from file or preset.

    Priority:
    1. If path is provided, load from TOML file
    2. If preset is provided, use preset
    3. Otherwise, use default config
    """
    if path is not None:
        return Config.from_toml(path, profile)
    elif preset is not None:
        return get_preset(preset)
    else:
        return Config()
