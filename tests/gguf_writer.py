"""Minimal GGUF v3 writer for test fixtures."""

import struct
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from llama_gguf.gguf import DEFAULT_ALIGNMENT, GGUF_MAGIC, GGMLType, GGUFValueType, align_offset

_SCALAR_PACK = {
    GGUFValueType.UINT8: "<B",
    GGUFValueType.INT8: "<b",
    GGUFValueType.UINT16: "<H",
    GGUFValueType.INT16: "<h",
    GGUFValueType.UINT32: "<I",
    GGUFValueType.INT32: "<i",
    GGUFValueType.FLOAT32: "<f",
    GGUFValueType.BOOL: "<B",
    GGUFValueType.UINT64: "<Q",
    GGUFValueType.INT64: "<q",
    GGUFValueType.FLOAT64: "<d",
}


def encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<Q", len(raw)) + raw


def encode_value(value_type: GGUFValueType, value: Any, item_type: Optional[GGUFValueType] = None) -> bytes:
    if value_type == GGUFValueType.STRING:
        return encode_string(value)
    if value_type == GGUFValueType.ARRAY:
        if item_type is None:
            raise ValueError("arrays need an item type")
        payload = struct.pack("<I", item_type) + struct.pack("<Q", len(value))
        if item_type == GGUFValueType.ARRAY:
            # nested arrays are given as (inner_type, values) pairs
            return payload + b"".join(encode_value(GGUFValueType.ARRAY, v, t) for t, v in value)
        return payload + b"".join(encode_value(item_type, v) for v in value)
    if value_type == GGUFValueType.BOOL:
        return struct.pack("<B", 1 if value else 0)
    return struct.pack(_SCALAR_PACK[value_type], value)


class GGUFWriter:
    """Collects metadata and tensors, then writes a GGUF file."""

    def __init__(self, alignment: int = DEFAULT_ALIGNMENT, version: int = 3, magic: int = GGUF_MAGIC):
        self.alignment = alignment
        self.version = version
        self.magic = magic
        self.kv: List[bytes] = []
        self.tensors: List[Tuple[str, Tuple[int, ...], int, bytes]] = []

    def add(self, key: str, value_type: GGUFValueType, value: Any, item_type: Optional[GGUFValueType] = None):
        self.kv.append(encode_string(key) + struct.pack("<I", value_type) + encode_value(value_type, value, item_type))
        return self

    def add_raw(self, key: str, type_tag: int, payload: bytes):
        """Entry with an arbitrary type tag, for malformed files."""
        self.kv.append(encode_string(key) + struct.pack("<I", type_tag) + payload)
        return self

    def add_string(self, key: str, value: str):
        return self.add(key, GGUFValueType.STRING, value)

    def add_uint32(self, key: str, value: int):
        return self.add(key, GGUFValueType.UINT32, value)

    def add_float32(self, key: str, value: float):
        return self.add(key, GGUFValueType.FLOAT32, value)

    def add_string_array(self, key: str, values: Sequence[str]):
        return self.add(key, GGUFValueType.ARRAY, list(values), GGUFValueType.STRING)

    def add_tensor(self, name: str, array: np.ndarray, ggml_type: GGMLType = GGMLType.F32):
        """Add an F32/F16 tensor from a numpy array in (rows, cols) order."""
        dtype = "<f4" if ggml_type == GGMLType.F32 else "<f2"
        data = np.ascontiguousarray(array, dtype=dtype).tobytes()
        self.tensors.append((name, tuple(reversed(array.shape)), int(ggml_type), data))
        return self

    def add_raw_tensor(self, name: str, gguf_shape: Sequence[int], type_code: int, data: bytes):
        """Add a tensor from raw bytes with the shape in GGUF order."""
        self.tensors.append((name, tuple(gguf_shape), type_code, data))
        return self

    def to_bytes(self) -> bytes:
        out = bytearray()
        out += struct.pack("<IIQQ", self.magic, self.version, len(self.tensors), len(self.kv))
        for entry in self.kv:
            out += entry

        offset = 0
        offsets = []
        for _, _, _, data in self.tensors:
            offsets.append(offset)
            offset = align_offset(offset + len(data), self.alignment)

        for (name, shape, type_code, _), tensor_offset in zip(self.tensors, offsets):
            out += encode_string(name)
            out += struct.pack("<I", len(shape))
            for dim in shape:
                out += struct.pack("<Q", dim)
            out += struct.pack("<I", type_code)
            out += struct.pack("<Q", tensor_offset)

        if not self.tensors:
            return bytes(out)

        data_start = align_offset(len(out), self.alignment)
        out += b"\x00" * (data_start - len(out))
        for (_, _, _, data), tensor_offset in zip(self.tensors, offsets):
            out += b"\x00" * (data_start + tensor_offset - len(out))
            out += data
        return bytes(out)

    def write(self, path) -> Path:
        path = Path(path)
        path.write_bytes(self.to_bytes())
        return path
