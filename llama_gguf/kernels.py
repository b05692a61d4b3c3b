"""
Compute Kernels

The transformer consumes seven operations through the Kernels interface:
- rmsnorm: x <- x / sqrt(mean(x^2) + eps) * weight
- matvec: out <- matrix @ x (float16 or float32 matrix, float32 accumulation)
- rope: rotate interleaved pairs (v[i], v[i+1]) of each head by position * theta^(-i/head_dim)
- attention_scores / attention_values: one GQA head against the KV cache
- softmax: numerically stable, in place
- silu: x <- x / (1 + exp(-x)), in place

All kernels write into caller-owned float32 buffers and return only after
every write is visible to the caller.

Providers:
- NumpyKernels: sequential reference
- ThreadedKernels: row-parallel matvec over a thread pool
- TorchKernels: PyTorch on CPU or CUDA (optional dependency); matches the
  numpy providers within float32 tolerance rather than bitwise
"""

import logging
import math
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


# Rows per matvec block. Every provider splits the same way, so float16 and
# float32 storage see identical float32 inputs per block.
ROW_BLOCK = 512


@lru_cache(maxsize=16)
def rope_frequencies(head_dim: int, theta: float) -> np.ndarray:
    """theta^(-i/head_dim) for each even i in [0, head_dim)."""
    exponents = np.arange(0, head_dim, 2, dtype=np.float64) / head_dim
    freqs = (1.0 / np.power(theta, exponents)).astype(np.float32)
    freqs.setflags(write=False)
    return freqs


class Kernels(ABC):
    """Execution strategy for the transformer's numeric operations."""

    name = "abstract"

    @abstractmethod
    def rmsnorm(self, x: np.ndarray, weight: np.ndarray, eps: float = 1e-5) -> None:
        """Normalize x in place and scale by weight."""

    @abstractmethod
    def matvec(self, matrix: np.ndarray, x: np.ndarray, out: np.ndarray) -> None:
        """out[r] = sum_c matrix[r, c] * x[c]. matrix may be float16 or float32."""

    @abstractmethod
    def rope(self, vec: np.ndarray, position: int, num_heads: int, head_dim: int, theta: float) -> None:
        """Apply rotary position embedding to every head of vec in place."""

    @abstractmethod
    def attention_scores(self, query: np.ndarray, keys: np.ndarray, out: np.ndarray) -> None:
        """out[t] = dot(query, keys[t]) / sqrt(head_dim) for each cached position t."""

    @abstractmethod
    def attention_values(self, scores: np.ndarray, values: np.ndarray, out: np.ndarray) -> None:
        """out = sum_t scores[t] * values[t]."""

    @abstractmethod
    def softmax(self, x: np.ndarray) -> None:
        """Stable softmax in place."""

    @abstractmethod
    def silu(self, x: np.ndarray) -> None:
        """SiLU activation in place."""

    def close(self):
        """Release backend resources."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class NumpyKernels(Kernels):
    """Sequential reference kernels."""

    name = "numpy"

    def __init__(self, row_block: int = ROW_BLOCK):
        self.row_block = row_block

    def rmsnorm(self, x, weight, eps=1e-5):
        inv_rms = np.float32(1.0) / np.sqrt(np.mean(x * x, dtype=np.float32) + np.float32(eps))
        x *= inv_rms
        x *= weight

    def _matvec_block(self, matrix, x, out, start, stop):
        block = matrix[start:stop]
        if block.dtype != np.float32:
            block = block.astype(np.float32)
        np.dot(block, x, out=out[start:stop])

    def _row_blocks(self, rows: int):
        return [(start, min(start + self.row_block, rows)) for start in range(0, rows, self.row_block)]

    def matvec(self, matrix, x, out):
        for start, stop in self._row_blocks(matrix.shape[0]):
            self._matvec_block(matrix, x, out, start, stop)

    def rope(self, vec, position, num_heads, head_dim, theta):
        freqs = rope_frequencies(head_dim, float(theta))
        angles = np.float32(position) * freqs
        cos = np.cos(angles)
        sin = np.sin(angles)

        pairs = vec[:num_heads * head_dim].reshape(num_heads, head_dim // 2, 2)
        even = pairs[..., 0].copy()
        odd = pairs[..., 1].copy()
        pairs[..., 0] = even * cos - odd * sin
        pairs[..., 1] = even * sin + odd * cos

    def attention_scores(self, query, keys, out):
        np.dot(keys, query, out=out)
        out /= np.float32(math.sqrt(query.shape[0]))

    def attention_values(self, scores, values, out):
        np.dot(scores, values, out=out)

    def softmax(self, x):
        x -= x.max()
        np.exp(x, out=x)
        x /= x.sum(dtype=np.float32)

    def silu(self, x):
        with np.errstate(over="ignore"):
            x /= np.float32(1.0) + np.exp(-x)


class ThreadedKernels(NumpyKernels):
    """Reference kernels with the matvec split over a thread pool.

    Uses the same row blocks as NumpyKernels, so results are bit-identical.
    """

    name = "threaded"

    def __init__(self, num_threads: Optional[int] = None, row_block: int = ROW_BLOCK):
        super().__init__(row_block)
        self.num_threads = num_threads or os.cpu_count() or 1
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_threads, thread_name_prefix="llama-gguf-matvec"
        )
        logger.info(f"Threaded kernels with {self.num_threads} workers")

    def matvec(self, matrix, x, out):
        blocks = self._row_blocks(matrix.shape[0])
        if len(blocks) == 1:
            self._matvec_block(matrix, x, out, *blocks[0])
            return

        futures = [
            self._executor.submit(self._matvec_block, matrix, x, out, start, stop)
            for start, stop in blocks
        ]
        # result() re-raises worker exceptions and orders the writes before return
        for future in futures:
            future.result()

    def close(self):
        self._executor.shutdown(wait=True)


class TorchKernels(Kernels):
    """Kernels on PyTorch tensors, for CUDA offload.

    Weight matrices are uploaded once and cached by identity. Results are
    copied back into the caller's numpy buffers before each call returns.

    matvec runs one torch.mv over the whole matrix instead of fixed row
    blocks, so results agree with NumpyKernels within float32 rounding
    (allclose), not bitwise.
    """

    name = "torch"

    def __init__(self, device: Optional[str] = None):
        try:
            import torch
        except ImportError as e:
            raise ImportError(
                "The torch backend requires PyTorch: pip install 'llama-gguf[torch]'"
            ) from e

        self.torch = torch
        if device is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = torch.device(device)
        self._weights: Dict[int, Tuple[np.ndarray, "torch.Tensor"]] = {}

        if self.device.type == "cuda":
            logger.info(f"Torch kernels on {torch.cuda.get_device_name(self.device)}")
        else:
            logger.info(f"Torch kernels on {self.device}")

    def _to_device(self, array: np.ndarray):
        return self.torch.from_numpy(np.ascontiguousarray(array)).to(self.device)

    def _weight(self, matrix: np.ndarray):
        key = id(matrix)
        cached = self._weights.get(key)
        if cached is None or cached[0] is not matrix:
            # Keep the array alive so its id stays unique
            cached = (matrix, self._to_device(matrix))
            self._weights[key] = cached
        return cached[1]

    def _copy_back(self, tensor, out: np.ndarray):
        out[...] = tensor.detach().to("cpu").numpy()

    def rmsnorm(self, x, weight, eps=1e-5):
        t = self._to_device(x)
        w = self._weight(weight)
        inv_rms = self.torch.rsqrt(self.torch.mean(t * t) + eps)
        self._copy_back(t * inv_rms * w, x)

    def matvec(self, matrix, x, out):
        w = self._weight(matrix)
        if w.dtype != self.torch.float32:
            w = w.float()
        self._copy_back(self.torch.mv(w, self._to_device(x)), out)

    def rope(self, vec, position, num_heads, head_dim, theta):
        torch = self.torch
        freqs = self._to_device(rope_frequencies(head_dim, float(theta)).copy())
        angles = position * freqs
        cos, sin = torch.cos(angles), torch.sin(angles)

        pairs = self._to_device(vec[:num_heads * head_dim]).view(num_heads, head_dim // 2, 2)
        even, odd = pairs[..., 0], pairs[..., 1]
        rotated = torch.stack((even * cos - odd * sin, even * sin + odd * cos), dim=-1)
        self._copy_back(rotated.reshape(-1), vec[:num_heads * head_dim])

    def attention_scores(self, query, keys, out):
        q = self._to_device(query)
        k = self._to_device(keys)
        self._copy_back(self.torch.mv(k, q) / math.sqrt(query.shape[0]), out)

    def attention_values(self, scores, values, out):
        s = self._to_device(scores)
        v = self._to_device(values)
        self._copy_back(self.torch.mv(v.t(), s), out)

    def softmax(self, x):
        self._copy_back(self.torch.softmax(self._to_device(x), dim=0), x)

    def silu(self, x):
        self._copy_back(self.torch.nn.functional.silu(self._to_device(x)), x)

    def close(self):
        self._weights.clear()


def create_kernels(backend: str = "numpy", **options) -> Kernels:
    """Create a kernel provider by name.

    Args:
        backend: "numpy", "threaded" or "torch"
        **options: num_threads (threaded), device (torch), row_block (numpy, threaded)

    Returns:
        Kernels instance
    """
    backend = backend.lower()
    if backend == "numpy":
        return NumpyKernels(row_block=options.get("row_block", ROW_BLOCK))
    if backend == "threaded":
        return ThreadedKernels(
            num_threads=options.get("num_threads"),
            row_block=options.get("row_block", ROW_BLOCK),
        )
    if backend == "torch":
        return TorchKernels(device=options.get("device"))
    raise ValueError(f"Unknown kernel backend: {backend}")
