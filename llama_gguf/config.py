"""
Model and Inference Configuration

Dataclasses describing the Llama 3.2 1B architecture and the runtime
options of the inference engine, plus a YAML loader.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import yaml

from .errors import ValidationError


@dataclass
class ModelConfig:
    """Architecture constants. Defaults are the Llama 3.2 1B values."""
    hidden_size: int = 2048
    intermediate_size: int = 8192
    num_layers: int = 16
    num_heads: int = 32
    num_kv_heads: int = 8
    vocab_size: int = 128256
    max_seq_len: int = 2048
    rope_theta: float = 500000.0
    norm_eps: float = 1e-5

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.hidden_size % self.num_heads != 0:
            raise ValidationError(
                f"hidden_size ({self.hidden_size}) must be divisible by num_heads ({self.num_heads})"
            )
        if self.num_heads % self.num_kv_heads != 0:
            raise ValidationError(
                f"num_heads ({self.num_heads}) must be divisible by num_kv_heads ({self.num_kv_heads})"
            )
        if self.max_seq_len <= 0:
            raise ValidationError(f"max_seq_len must be positive, got {self.max_seq_len}")
        self.head_dim = self.hidden_size // self.num_heads
        if self.head_dim % 2 != 0:
            raise ValidationError(f"head_dim ({self.head_dim}) must be even for rotary embedding")
        self.kv_dim = self.num_kv_heads * self.head_dim

    @property
    def kv_group_size(self) -> int:
        """Query heads per key/value head."""
        return self.num_heads // self.num_kv_heads

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ModelConfig":
        """Create config from dictionary."""
        return cls(**{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__})

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            "hidden_size": self.hidden_size,
            "intermediate_size": self.intermediate_size,
            "num_layers": self.num_layers,
            "num_heads": self.num_heads,
            "num_kv_heads": self.num_kv_heads,
            "vocab_size": self.vocab_size,
            "max_seq_len": self.max_seq_len,
            "rope_theta": self.rope_theta,
            "norm_eps": self.norm_eps,
        }

    def estimate_parameters(self, tied_embeddings: bool = True) -> int:
        """Estimate total number of parameters in the model."""
        params = self.vocab_size * self.hidden_size

        # Q and output are hidden x hidden, K and V are hidden x kv_dim
        attn_params = 2 * self.hidden_size * self.hidden_size + 2 * self.hidden_size * self.kv_dim
        # SwiGLU: gate, up, down
        ffn_params = 3 * self.hidden_size * self.intermediate_size
        norm_params = 2 * self.hidden_size

        params += self.num_layers * (attn_params + ffn_params + norm_params)
        params += self.hidden_size

        if not tied_embeddings:
            params += self.vocab_size * self.hidden_size
        return params


LLAMA_3_2_1B = ModelConfig()


BACKENDS = ("numpy", "threaded", "torch")
WEIGHT_MODES = ("f16", "f32")


@dataclass
class InferenceConfig:
    """Runtime options for the engine."""
    backend: str = "numpy"
    weight_mode: str = "f16"
    num_threads: Optional[int] = None  # threaded backend; None = os.cpu_count()
    device: Optional[str] = None  # torch backend; None = cuda if available
    max_new_tokens: int = 256
    system_prompt: str = "You are a helpful assistant."
    show_progress: bool = False

    def __post_init__(self):
        """Validate configuration parameters."""
        if not isinstance(self.backend, str):
            raise ValidationError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if not isinstance(self.weight_mode, str):
            raise ValidationError(f"weight_mode must be one of {WEIGHT_MODES}, got {self.weight_mode!r}")
        self.backend = self.backend.lower()
        self.weight_mode = self.weight_mode.lower()
        if self.backend not in BACKENDS:
            raise ValidationError(f"Unknown backend '{self.backend}', expected one of {BACKENDS}")
        if self.weight_mode not in WEIGHT_MODES:
            raise ValidationError(
                f"Unknown weight mode '{self.weight_mode}', expected one of {WEIGHT_MODES}"
            )
        if self.num_threads is not None and self.num_threads <= 0:
            raise ValidationError(f"num_threads must be positive, got {self.num_threads}")

    @classmethod
    def from_dict(cls, config_dict: dict) -> "InferenceConfig":
        """Create config from dictionary."""
        return cls(**{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__})

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            "backend": self.backend,
            "weight_mode": self.weight_mode,
            "num_threads": self.num_threads,
            "device": self.device,
            "max_new_tokens": self.max_new_tokens,
            "system_prompt": self.system_prompt,
            "show_progress": self.show_progress,
        }


def load_config(config_path: str) -> Tuple[ModelConfig, InferenceConfig]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config YAML

    Returns:
        Tuple of (ModelConfig, InferenceConfig)
    """
    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    model_config = ModelConfig.from_dict(config.get("model") or {})
    inference_config = InferenceConfig.from_dict(config.get("inference") or {})

    return model_config, inference_config
