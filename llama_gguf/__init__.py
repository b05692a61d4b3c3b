"""
Llama 3.2 1B GGUF Inference Engine

A self-contained greedy-decoding inference engine for Llama 3.2 1B Instruct,
loading weights straight from a GGUF model file.
"""

__version__ = "0.1.0"

from .chat_format import ChatFormat, Message, Role
from .config import LLAMA_3_2_1B, InferenceConfig, ModelConfig, load_config
from .errors import (
    FormatError,
    TensorLookupError,
    TokenizerValidationError,
    UnsupportedTensorTypeError,
    ValidationError,
)
from .gguf import GGUFMetadata, GGUFTensorInfo, read_metadata
from .inference import LlamaInference
from .kernels import Kernels, NumpyKernels, ThreadedKernels, TorchKernels, create_kernels
from .model import LlamaModel, WeightStorageMode
from .tokenizer import Tokenizer

__all__ = [
    "ChatFormat",
    "FormatError",
    "GGUFMetadata",
    "GGUFTensorInfo",
    "InferenceConfig",
    "Kernels",
    "LLAMA_3_2_1B",
    "LlamaInference",
    "LlamaModel",
    "Message",
    "ModelConfig",
    "NumpyKernels",
    "Role",
    "TensorLookupError",
    "ThreadedKernels",
    "Tokenizer",
    "TokenizerValidationError",
    "TorchKernels",
    "UnsupportedTensorTypeError",
    "ValidationError",
    "WeightStorageMode",
    "create_kernels",
    "load_config",
    "read_metadata",
]
