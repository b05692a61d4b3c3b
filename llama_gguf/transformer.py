"""
Transformer Block

One Llama decoder layer for single-token inference, with its own KV cache.

Flow per token:
1. RMSNorm (attn_norm)
2. Q, K, V projections
3. RoPE on Q and K
4. Grouped-query attention over the cached positions
5. Output projection + residual
6. RMSNorm (ffn_norm)
7. SwiGLU feed-forward + residual
"""

import logging
from typing import Optional, Union

import numpy as np

from .config import ModelConfig
from .kernels import Kernels
from .model import LlamaModel, WeightStorageMode

logger = logging.getLogger(__name__)


class KVCache:
    """Fixed-capacity key/value arena for one layer.

    Position p occupies row p of `keys` and `values`, each row holding all
    KV heads (kv_dim = num_kv_heads * head_dim floats).
    """

    def __init__(self, max_seq_len: int, kv_dim: int):
        self.max_seq_len = max_seq_len
        self.kv_dim = kv_dim
        self.keys = np.zeros((max_seq_len, kv_dim), dtype=np.float32)
        self.values = np.zeros((max_seq_len, kv_dim), dtype=np.float32)
        self.length = 0

    def store(self, position: int, key: np.ndarray, value: np.ndarray):
        """Write the key/value vectors for *position*. Unwritten rows stay zero."""
        if not 0 <= position < self.max_seq_len:
            raise ValueError(f"Position {position} outside KV cache of {self.max_seq_len}")
        self.keys[position] = key
        self.values[position] = value
        self.length = max(self.length, position + 1)

    def head_keys(self, kv_head: int, head_dim: int, seq_len: int) -> np.ndarray:
        """(seq_len, head_dim) view of one KV head's keys."""
        start = kv_head * head_dim
        return self.keys[:seq_len, start:start + head_dim]

    def head_values(self, kv_head: int, head_dim: int, seq_len: int) -> np.ndarray:
        start = kv_head * head_dim
        return self.values[:seq_len, start:start + head_dim]

    def reset(self):
        self.keys.fill(0.0)
        self.values.fill(0.0)
        self.length = 0


class TransformerBlock:
    """Llama decoder layer with pre-norm attention and SwiGLU feed-forward."""

    def __init__(
        self,
        model: LlamaModel,
        layer_idx: int,
        kernels: Kernels,
        weight_mode: Union[str, WeightStorageMode] = WeightStorageMode.F16,
        config: Optional[ModelConfig] = None,
    ):
        """Map this layer's weights and allocate its buffers.

        Args:
            model: Loaded model
            layer_idx: Layer index (tensor prefix blk.{layer_idx}.)
            kernels: Kernel provider
            weight_mode: Storage mode for projection weights
            config: Architecture constants (defaults to the model's)
        """
        self.layer_idx = layer_idx
        self.kernels = kernels
        self.weight_mode = WeightStorageMode.parse(weight_mode)
        self.config = config or model.config
        cfg = self.config

        # Norm weights are F32 in GGUF; projections are usually F16 on disk
        prefix = f"blk.{layer_idx}."
        self.attn_norm = model.map_tensor(prefix + "attn_norm.weight")
        self.wq = model.map_weight(prefix + "attn_q.weight", self.weight_mode)
        self.wk = model.map_weight(prefix + "attn_k.weight", self.weight_mode)
        self.wv = model.map_weight(prefix + "attn_v.weight", self.weight_mode)
        self.wo = model.map_weight(prefix + "attn_output.weight", self.weight_mode)

        self.ffn_norm = model.map_tensor(prefix + "ffn_norm.weight")
        self.w1 = model.map_weight(prefix + "ffn_gate.weight", self.weight_mode)
        self.w2 = model.map_weight(prefix + "ffn_down.weight", self.weight_mode)
        self.w3 = model.map_weight(prefix + "ffn_up.weight", self.weight_mode)

        self._check_shape("attn_q", self.wq, (cfg.hidden_size, cfg.hidden_size))
        self._check_shape("attn_k", self.wk, (cfg.kv_dim, cfg.hidden_size))
        self._check_shape("attn_v", self.wv, (cfg.kv_dim, cfg.hidden_size))
        self._check_shape("attn_output", self.wo, (cfg.hidden_size, cfg.hidden_size))
        self._check_shape("ffn_gate", self.w1, (cfg.intermediate_size, cfg.hidden_size))
        self._check_shape("ffn_down", self.w2, (cfg.hidden_size, cfg.intermediate_size))
        self._check_shape("ffn_up", self.w3, (cfg.intermediate_size, cfg.hidden_size))

        self.cache = KVCache(cfg.max_seq_len, cfg.kv_dim)

        # Scratch buffers
        self._xb = np.zeros(cfg.hidden_size, dtype=np.float32)
        self._q = np.zeros(cfg.hidden_size, dtype=np.float32)
        self._k = np.zeros(cfg.kv_dim, dtype=np.float32)
        self._v = np.zeros(cfg.kv_dim, dtype=np.float32)
        self._attn_out = np.zeros(cfg.hidden_size, dtype=np.float32)
        self._proj = np.zeros(cfg.hidden_size, dtype=np.float32)
        self._scores = np.zeros(cfg.max_seq_len, dtype=np.float32)
        self._gate = np.zeros(cfg.intermediate_size, dtype=np.float32)
        self._up = np.zeros(cfg.intermediate_size, dtype=np.float32)

    def _check_shape(self, name: str, weight: np.ndarray, expected):
        if weight.shape != tuple(expected):
            raise ValueError(
                f"blk.{self.layer_idx}.{name}.weight has shape {weight.shape}, expected {tuple(expected)}"
            )

    def forward(self, x: np.ndarray, position: int):
        """Run the layer on hidden state *x* in place.

        Args:
            x: float32 hidden state [hidden_size], updated in place
            position: Token position; attends over cache rows 0..position
        """
        cfg = self.config
        ops = self.kernels
        head_dim = cfg.head_dim

        # Attention
        self._xb[:] = x
        ops.rmsnorm(self._xb, self.attn_norm, cfg.norm_eps)

        ops.matvec(self.wq, self._xb, self._q)
        ops.matvec(self.wk, self._xb, self._k)
        ops.matvec(self.wv, self._xb, self._v)

        ops.rope(self._q, position, cfg.num_heads, head_dim, cfg.rope_theta)
        ops.rope(self._k, position, cfg.num_kv_heads, head_dim, cfg.rope_theta)

        self.cache.store(position, self._k, self._v)

        seq_len = position + 1
        scores = self._scores[:seq_len]
        group = cfg.kv_group_size
        for h in range(cfg.num_heads):
            kv_head = h // group
            q_head = self._q[h * head_dim:(h + 1) * head_dim]
            ops.attention_scores(q_head, self.cache.head_keys(kv_head, head_dim, seq_len), scores)
            ops.softmax(scores)
            ops.attention_values(
                scores,
                self.cache.head_values(kv_head, head_dim, seq_len),
                self._attn_out[h * head_dim:(h + 1) * head_dim],
            )

        ops.matvec(self.wo, self._attn_out, self._proj)
        x += self._proj

        # Feed-forward
        self._xb[:] = x
        ops.rmsnorm(self._xb, self.ffn_norm, cfg.norm_eps)

        ops.matvec(self.w1, self._xb, self._gate)
        ops.matvec(self.w3, self._xb, self._up)
        ops.silu(self._gate)
        self._gate *= self._up
        ops.matvec(self.w2, self._gate, self._proj)
        x += self._proj

    def reset(self):
        """Clear the KV cache for a new session."""
        self.cache.reset()
