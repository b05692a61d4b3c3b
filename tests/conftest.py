import pytest

from llama_gguf.inference import LlamaInference
from llama_gguf.kernels import NumpyKernels
from llama_gguf.model import LlamaModel, WeightStorageMode
from llama_gguf.tokenizer import Tokenizer
from tiny_model import MERGES, TINY_CONFIG, build_vocab, write_tiny_model


@pytest.fixture(scope="session")
def vocab():
    return build_vocab()


@pytest.fixture(scope="session")
def tokenizer(vocab):
    return Tokenizer(vocab, MERGES)


@pytest.fixture(scope="session")
def tiny_model_path(tmp_path_factory):
    return write_tiny_model(tmp_path_factory.mktemp("models") / "tiny-llama.gguf")


@pytest.fixture
def tiny_model(tiny_model_path):
    return LlamaModel(tiny_model_path, TINY_CONFIG, strict=False)


@pytest.fixture(scope="session")
def engine(tiny_model_path):
    model = LlamaModel(tiny_model_path, TINY_CONFIG, strict=False)
    return LlamaInference(model, NumpyKernels(), WeightStorageMode.F16)


@pytest.fixture(scope="session")
def engine_f32(tiny_model_path):
    model = LlamaModel(tiny_model_path, TINY_CONFIG, strict=False)
    return LlamaInference(model, NumpyKernels(), WeightStorageMode.F32)
