"""Exception types shared across the engine."""

from typing import Optional


class FormatError(ValueError):
    """Raised when a GGUF container is malformed.

    Covers a bad magic number, an unknown value-type tag and reads that run
    past the end of the file. Loading aborts; no partial model is returned.
    """


class ValidationError(ValueError):
    """Raised when a well-formed file is not something this engine can run."""


class TokenizerValidationError(ValidationError):
    """Raised when tokenizer metadata is missing or of the wrong kind."""


class TensorLookupError(LookupError):
    """Raised when a requested tensor is not present in the tensor directory."""

    def __init__(self, tensor_name: str, message: Optional[str] = None) -> None:
        self.tensor_name = tensor_name
        super().__init__(message or f"Tensor not found: {tensor_name}")


class UnsupportedTensorTypeError(TensorLookupError):
    """Raised when a tensor's storage type cannot be loaded into a compute buffer.

    Carries the tensor *name* and its GGML *type_code* so callers can report
    which block-quantized format was encountered.
    """

    def __init__(self, tensor_name: str, type_code: int, supported: str = "F32 (0) and F16 (1)") -> None:
        self.type_code = type_code
        super().__init__(
            tensor_name,
            f"Unsupported tensor type {type_code} for tensor '{tensor_name}'. "
            f"Only {supported} are supported.",
        )
