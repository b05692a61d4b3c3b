"""Tests for LlamaModel validation and the tensor cache."""

import logging
import threading

import numpy as np
import pytest

from gguf_writer import GGUFWriter
from llama_gguf.errors import (
    FormatError,
    TensorLookupError,
    UnsupportedTensorTypeError,
    ValidationError,
)
from llama_gguf.gguf import GGMLType
from llama_gguf.model import LlamaModel, WeightStorageMode
from tiny_model import TINY_CONFIG, write_tiny_model


def _small_llama(tmp_path, name="small.gguf"):
    weights = np.linspace(-1.0, 1.0, 24, dtype=np.float32).reshape(4, 6)
    writer = (
        GGUFWriter()
        .add_string("general.architecture", "llama")
        .add_tensor("f32.weight", weights)
        .add_tensor("f16.weight", weights, GGMLType.F16)
        .add_tensor("norm.weight", np.ones(6, dtype=np.float32))
        .add_raw_tensor("q4.weight", (64,), GGMLType.Q4_0, b"\x00" * 36)
    )
    return writer.write(tmp_path / name), weights


def test_rejects_missing_architecture(tmp_path):
    path = write_tiny_model(tmp_path / "noarch.gguf", architecture=None)

    with pytest.raises(ValidationError):
        LlamaModel(path, TINY_CONFIG, strict=False)


def test_rejects_foreign_architecture(tmp_path):
    path = GGUFWriter().add_string("general.architecture", "gpt2").write(tmp_path / "gpt2.gguf")

    with pytest.raises(ValidationError, match="gpt2"):
        LlamaModel(path, strict=False)


def test_strict_rejects_stub_files(tmp_path):
    path, _ = _small_llama(tmp_path)

    with pytest.raises(ValidationError, match="Too few tensors"):
        LlamaModel(path)

    model = LlamaModel(path, strict=False)
    assert model.metadata.tensor_count == 4


def test_bad_magic_is_format_error(tmp_path):
    path = GGUFWriter(magic=0).add_string("general.architecture", "llama").write(tmp_path / "bad.gguf")

    with pytest.raises(FormatError):
        LlamaModel(path, strict=False)


def test_map_tensor_f32_and_f16(tmp_path):
    path, weights = _small_llama(tmp_path)
    model = LlamaModel(path, strict=False)

    f32 = model.map_tensor("f32.weight")
    f16 = model.map_tensor("f16.weight")

    assert f32.dtype == np.float32
    assert f32.shape == (4, 6)
    assert np.array_equal(f32, weights)
    assert f16.dtype == np.float32
    assert np.array_equal(f16, weights.astype(np.float16).astype(np.float32))
    assert model.map_tensor("norm.weight").shape == (6,)


def test_map_tensor_is_cached(tiny_model):
    first = tiny_model.map_tensor("blk.0.attn_norm.weight")
    second = tiny_model.map_tensor("blk.0.attn_norm.weight")

    assert first is second
    assert "blk.0.attn_norm.weight" in tiny_model.cached_tensor_names()


def test_concurrent_first_load_shares_buffer(tiny_model):
    results = []

    def load():
        results.append(tiny_model.map_tensor("token_embd.weight"))

    threads = [threading.Thread(target=load) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 4
    assert all(r is results[0] for r in results)


def test_missing_tensor(tiny_model):
    with pytest.raises(TensorLookupError) as excinfo:
        tiny_model.map_tensor("blk.99.attn_q.weight")

    assert isinstance(excinfo.value, LookupError)
    assert excinfo.value.tensor_name == "blk.99.attn_q.weight"
    assert not tiny_model.has_tensor("blk.99.attn_q.weight")
    assert tiny_model.get_tensor_info("blk.99.attn_q.weight") is None


def test_quantized_tensor_rejected_without_caching(tmp_path):
    path, _ = _small_llama(tmp_path)
    model = LlamaModel(path, strict=False)

    with pytest.raises(UnsupportedTensorTypeError) as excinfo:
        model.map_tensor("q4.weight")

    assert excinfo.value.type_code == GGMLType.Q4_0
    assert "q4.weight" not in model.cached_tensor_names()
    assert model.has_tensor("q4.weight")


def test_map_tensor_f16(tmp_path):
    path, weights = _small_llama(tmp_path)
    model = LlamaModel(path, strict=False)

    half = model.map_tensor_f16("f16.weight")

    assert half.dtype == np.float16
    assert np.array_equal(half, weights.astype(np.float16))
    assert model.map_tensor_f16("f16.weight") is half
    with pytest.raises(UnsupportedTensorTypeError):
        model.map_tensor_f16("f32.weight")


def test_map_weight_modes(tmp_path):
    path, _ = _small_llama(tmp_path)
    model = LlamaModel(path, strict=False)

    assert model.map_weight("f16.weight", WeightStorageMode.F16).dtype == np.float16
    assert model.map_weight("f16.weight", WeightStorageMode.F32).dtype == np.float32
    # F32 tensors stay F32 in either mode
    assert model.map_weight("f32.weight", "f16").dtype == np.float32


def test_weight_storage_mode_parse():
    assert WeightStorageMode.parse("F16") is WeightStorageMode.F16
    assert WeightStorageMode.parse(WeightStorageMode.F32) is WeightStorageMode.F32
    with pytest.raises(ValidationError):
        WeightStorageMode.parse("q4")


def test_truncated_tensor_data(tmp_path):
    path, _ = _small_llama(tmp_path)
    model = LlamaModel(path, strict=False)
    info = model.get_tensor_info("f16.weight")
    # cut into the middle of f16.weight
    with open(path, "r+b") as f:
        f.truncate(model.metadata.data_start_offset + info.offset + 4)

    truncated = LlamaModel(path, strict=False)
    with pytest.raises(FormatError):
        truncated.map_tensor("f16.weight")
    with pytest.raises(FormatError):
        truncated.map_tensor_f16("f16.weight")
    assert truncated.map_tensor("f32.weight").shape == (4, 6)


def test_tensor_past_end_of_file(tmp_path):
    path = (
        GGUFWriter()
        .add_string("general.architecture", "llama")
        .add_raw_tensor("big.weight", (1024,), GGMLType.F32, b"\x00" * 16)
        .write(tmp_path / "short.gguf")
    )
    model = LlamaModel(path, strict=False)

    with pytest.raises(FormatError, match="past end of file"):
        model.map_tensor("big.weight")
    assert model.cached_tensor_names() == []


def test_architecture_constants(tiny_model):
    assert tiny_model.hidden_size == 32
    assert tiny_model.num_layers == 2
    assert tiny_model.num_heads == 4
    assert tiny_model.num_kv_heads == 2
    assert tiny_model.head_dim == 8
    assert tiny_model.vocab_size == 128256


def test_default_config_is_llama_3_2_1b(tmp_path):
    path, _ = _small_llama(tmp_path)
    model = LlamaModel(path, strict=False)

    assert model.hidden_size == 2048
    assert model.num_layers == 16
    assert model.num_heads == 32
    assert model.num_kv_heads == 8
    assert model.head_dim == 64
    assert model.vocab_size == 128256


def test_hyperparameter_mismatch_warns(tiny_model_path, caplog):
    with caplog.at_level(logging.WARNING, logger="llama_gguf.model"):
        LlamaModel(tiny_model_path, strict=False)

    assert "llama.embedding_length=32" in caplog.text
