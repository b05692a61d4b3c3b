"""
Llama Model Weights

Wraps a parsed GGUF file for the Llama 3.2 1B architecture:
- Architecture validation (general.architecture must be "llama")
- Lazy, cached materialization of named tensors
- F16 or F32 in-memory storage of projection weights

Only F32 and F16 tensors can be loaded. Block-quantized tensors are rejected.
"""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from .config import LLAMA_3_2_1B, ModelConfig
from .errors import FormatError, TensorLookupError, UnsupportedTensorTypeError, ValidationError
from .gguf import GGMLType, GGUFMetadata, GGUFTensorInfo, read_metadata

logger = logging.getLogger(__name__)


MIN_TENSOR_COUNT = 100

_NUMPY_DTYPES = {
    GGMLType.F32: np.dtype("<f4"),
    GGMLType.F16: np.dtype("<f2"),
}

# GGUF metadata key -> ModelConfig attribute
_HPARAM_KEYS = {
    "llama.embedding_length": "hidden_size",
    "llama.feed_forward_length": "intermediate_size",
    "llama.block_count": "num_layers",
    "llama.attention.head_count": "num_heads",
    "llama.attention.head_count_kv": "num_kv_heads",
}


class WeightStorageMode(Enum):
    """How projection weights are held in memory."""
    F16 = "f16"  # keep half precision, widen inside the matvec kernel
    F32 = "f32"  # widen once at load

    @classmethod
    def parse(cls, value: Union[str, "WeightStorageMode"]) -> "WeightStorageMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown weight storage mode: {value}") from None


class LlamaModel:
    """A Llama GGUF file with a per-name tensor cache."""

    def __init__(
        self,
        path: Union[str, Path],
        config: Optional[ModelConfig] = None,
        strict: bool = True,
    ):
        """Open and validate a model file.

        Args:
            path: Path to the .gguf file
            config: Architecture constants (defaults to Llama 3.2 1B)
            strict: Reject files with fewer than 100 tensors. Only test
                fixtures should pass False.

        Raises:
            FileNotFoundError: If the file does not exist
            FormatError: If the container cannot be parsed
            ValidationError: If the file is not a Llama model
        """
        self.path = Path(path)
        self.config = config or LLAMA_3_2_1B
        self.metadata: GGUFMetadata = read_metadata(str(self.path))

        self._tensors: Dict[str, np.ndarray] = {}
        self._f16_tensors: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

        self._validate(strict)

        logger.info(
            f"Opened {self.path.name}: GGUF v{self.metadata.version}, "
            f"{self.metadata.tensor_count} tensors, {self.metadata.kv_count} metadata keys"
        )

    def _validate(self, strict: bool):
        arch = self.metadata.metadata.get("general.architecture")
        if arch != "llama":
            raise ValidationError(f"Expected 'llama' architecture, got: {arch}")

        if strict and self.metadata.tensor_count < MIN_TENSOR_COUNT:
            raise ValidationError(f"Too few tensors for Llama model: {self.metadata.tensor_count}")

        for key, attr in _HPARAM_KEYS.items():
            value = self.metadata.metadata.get(key)
            expected = getattr(self.config, attr)
            if value is not None and value != expected:
                logger.warning(f"Metadata {key}={value} does not match config {attr}={expected}")

    @property
    def hidden_size(self) -> int:
        return self.config.hidden_size

    @property
    def num_layers(self) -> int:
        return self.config.num_layers

    @property
    def num_heads(self) -> int:
        return self.config.num_heads

    @property
    def num_kv_heads(self) -> int:
        return self.config.num_kv_heads

    @property
    def head_dim(self) -> int:
        return self.config.head_dim

    @property
    def vocab_size(self) -> int:
        return self.config.vocab_size

    def get_tensor_info(self, name: str) -> Optional[GGUFTensorInfo]:
        """Return the directory entry for *name*, or None."""
        return self.metadata.get_tensor(name)

    def has_tensor(self, name: str) -> bool:
        """Check if a tensor exists without loading it."""
        return self.metadata.has_tensor(name)

    def _require_info(self, name: str) -> GGUFTensorInfo:
        info = self.metadata.get_tensor(name)
        if info is None:
            raise TensorLookupError(name)
        return info

    def _read(self, info: GGUFTensorInfo, dtype: np.dtype) -> np.ndarray:
        """Read a tensor's raw data as an array shaped (rows, cols) in numpy order."""
        nbytes = info.size()
        offset = self.metadata.data_start_offset + info.offset
        if offset + nbytes > self.metadata.file_size:
            raise FormatError(
                f"Tensor '{info.name}' data [{offset}, {offset + nbytes}) runs past end of file "
                f"({self.metadata.file_size} bytes)"
            )

        # GGUF lists the fastest-varying dimension first
        shape = tuple(reversed(info.shape)) or (1,)
        return np.array(np.memmap(self.path, dtype=dtype, mode="r", offset=offset, shape=shape))

    def map_tensor(self, name: str) -> np.ndarray:
        """Load a tensor as float32, caching it by name.

        Repeated calls with the same name return the same array object.

        Args:
            name: Exact tensor name, e.g. "blk.0.attn_q.weight"

        Returns:
            float32 array shaped (rows, cols) for matrices, (n,) for vectors

        Raises:
            TensorLookupError: If no such tensor exists
            UnsupportedTensorTypeError: If the tensor is not F32 or F16
            FormatError: If the tensor data runs past the end of the file
        """
        with self._lock:
            cached = self._tensors.get(name)
            if cached is not None:
                logger.debug(f"Tensor cache hit: {name}")
                return cached

            info = self._require_info(name)
            ggml_type = info.ggml_type
            if ggml_type not in _NUMPY_DTYPES:
                raise UnsupportedTensorTypeError(name, info.type_code)

            data = self._read(info, _NUMPY_DTYPES[ggml_type])
            if data.dtype != np.float32:
                data = data.astype(np.float32)

            self._tensors[name] = data
            logger.debug(f"Materialized {name} {data.shape} from {ggml_type.name}")
            return data

    def map_tensor_f16(self, name: str) -> np.ndarray:
        """Load an F16 tensor without widening it, caching it by name.

        Raises:
            TensorLookupError: If no such tensor exists
            UnsupportedTensorTypeError: If the tensor is not stored as F16
        """
        with self._lock:
            cached = self._f16_tensors.get(name)
            if cached is not None:
                logger.debug(f"F16 tensor cache hit: {name}")
                return cached

            info = self._require_info(name)
            if info.ggml_type != GGMLType.F16:
                raise UnsupportedTensorTypeError(name, info.type_code, "F16 (1)")

            data = self._read(info, _NUMPY_DTYPES[GGMLType.F16]).astype(np.float16, copy=False)

            self._f16_tensors[name] = data
            logger.debug(f"Materialized {name} {data.shape} as F16")
            return data

    def map_weight(self, name: str, mode: WeightStorageMode = WeightStorageMode.F32) -> np.ndarray:
        """Load a weight in the given storage mode.

        F16 mode keeps half-precision tensors as float16; F32 tensors are
        always returned as float32.
        """
        mode = WeightStorageMode.parse(mode)
        if mode is WeightStorageMode.F16:
            info = self._require_info(name)
            if info.ggml_type == GGMLType.F16:
                return self.map_tensor_f16(name)
        return self.map_tensor(name)

    def cached_tensor_names(self):
        """Names of all tensors materialized so far."""
        with self._lock:
            return sorted(set(self._tensors) | set(self._f16_tensors))

    def __repr__(self) -> str:
        return f"LlamaModel(path='{self.path}', tensors={self.metadata.tensor_count})"
