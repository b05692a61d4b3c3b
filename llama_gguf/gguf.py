"""
GGUF Container Reader

Parses the header, the typed key-value metadata section and the tensor
directory of a GGUF model file. Tensor data itself is not touched here;
see LlamaModel.map_tensor for materialization.

Layout (little-endian):
    magic u32 | version u32 | tensor_count u64 | kv_count u64
    kv_count x (key: string, type: u32, value)
    tensor_count x (name: string, n_dims: u32, shape: n_dims x u64, type: u32, offset: u64)
    padding up to general.alignment (default 32), then tensor data
"""

import argparse
import logging
import mmap
import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import FormatError, UnsupportedTensorTypeError

logger = logging.getLogger(__name__)


GGUF_MAGIC = 0x46554747  # "GGUF" read as little-endian u32
DEFAULT_ALIGNMENT = 32
SUPPORTED_VERSIONS = (2, 3)  # v1 used 32-bit counts and lengths


class GGUFValueType(IntEnum):
    """Type tags for metadata values."""
    UINT8 = 0
    INT8 = 1
    UINT16 = 2
    INT16 = 3
    UINT32 = 4
    INT32 = 5
    FLOAT32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12


class GGMLType(IntEnum):
    """Tensor storage formats."""
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8
    Q8_1 = 9
    Q2_K = 10
    Q3_K = 11
    Q4_K = 12
    Q5_K = 13
    Q6_K = 14
    Q8_K = 15


# Fixed-width scalar encodings: (struct format, numpy dtype)
_SCALAR_FORMATS: Dict[GGUFValueType, Tuple[str, str]] = {
    GGUFValueType.UINT8: ("<B", "<u1"),
    GGUFValueType.INT8: ("<b", "<i1"),
    GGUFValueType.UINT16: ("<H", "<u2"),
    GGUFValueType.INT16: ("<h", "<i2"),
    GGUFValueType.UINT32: ("<I", "<u4"),
    GGUFValueType.INT32: ("<i", "<i4"),
    GGUFValueType.FLOAT32: ("<f", "<f4"),
    GGUFValueType.BOOL: ("<B", "<u1"),
    GGUFValueType.UINT64: ("<Q", "<u8"),
    GGUFValueType.INT64: ("<q", "<i8"),
    GGUFValueType.FLOAT64: ("<d", "<f8"),
}

# (elements per block, bytes per block)
GGML_BLOCK_SIZES: Dict[GGMLType, Tuple[int, int]] = {
    GGMLType.F32: (1, 4),
    GGMLType.F16: (1, 2),
    GGMLType.Q4_0: (32, 18),
    GGMLType.Q4_1: (32, 20),
    GGMLType.Q5_0: (32, 22),
    GGMLType.Q5_1: (32, 24),
    GGMLType.Q8_0: (32, 34),
    GGMLType.Q8_1: (32, 36),
    GGMLType.Q2_K: (256, 84),
    GGMLType.Q3_K: (256, 110),
    GGMLType.Q4_K: (256, 144),
    GGMLType.Q5_K: (256, 176),
    GGMLType.Q6_K: (256, 210),
    GGMLType.Q8_K: (256, 292),
}


@dataclass
class GGUFTensorInfo:
    """One entry of the tensor directory."""
    name: str
    n_dims: int
    shape: Tuple[int, ...]
    type_code: int
    offset: int  # relative to data start

    @property
    def element_count(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count

    @property
    def ggml_type(self) -> Optional[GGMLType]:
        try:
            return GGMLType(self.type_code)
        except ValueError:
            return None

    def size(self) -> int:
        """Byte size of the tensor data, derived from shape and storage type."""
        ggml_type = self.ggml_type
        if ggml_type is None:
            raise UnsupportedTensorTypeError(self.name, self.type_code, "known GGML types")
        block_elements, block_bytes = GGML_BLOCK_SIZES[ggml_type]
        return (self.element_count // block_elements) * block_bytes


@dataclass
class GGUFMetadata:
    """Parsed header, metadata and tensor directory of a GGUF file."""
    version: int
    tensor_count: int
    kv_count: int
    metadata: Dict[str, Any]
    tensors: List[GGUFTensorInfo]
    data_start_offset: int
    value_types: Dict[str, GGUFValueType] = field(default_factory=dict)
    file_size: int = 0

    def __post_init__(self):
        self._by_name = {info.name: info for info in self.tensors}

    @property
    def alignment(self) -> int:
        return _alignment_from(self.metadata)

    def get_tensor(self, name: str) -> Optional[GGUFTensorInfo]:
        """Look up a tensor descriptor by exact name."""
        return self._by_name.get(name)

    def has_tensor(self, name: str) -> bool:
        return name in self._by_name


class _Cursor:
    """Sequential little-endian reader over a read-only buffer."""

    def __init__(self, buffer, size: int):
        self.buffer = buffer
        self.size = size
        self.offset = 0

    def _require(self, count: int, what: str):
        if count < 0 or self.offset + count > self.size:
            raise FormatError(
                f"Truncated GGUF file: need {count} bytes for {what} at offset {self.offset}, "
                f"file has {self.size}"
            )

    def unpack(self, fmt: str, what: str):
        width = struct.calcsize(fmt)
        self._require(width, what)
        value = struct.unpack_from(fmt, self.buffer, self.offset)[0]
        self.offset += width
        return value

    def read_string(self, what: str = "string") -> str:
        length = self.unpack("<Q", f"{what} length")
        self._require(length, what)
        raw = bytes(self.buffer[self.offset:self.offset + length])
        self.offset += length
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Invalid UTF-8 in {what} at offset {self.offset - length}") from e

    def read_value_type(self, what: str) -> GGUFValueType:
        tag = self.unpack("<I", f"{what} type tag")
        try:
            return GGUFValueType(tag)
        except ValueError:
            raise FormatError(f"Unknown GGUF value type {tag} for {what}") from None

    def read_value(self, value_type: GGUFValueType, what: str) -> Any:
        if value_type == GGUFValueType.STRING:
            return self.read_string(what)
        if value_type == GGUFValueType.ARRAY:
            return self.read_array(what)
        if value_type == GGUFValueType.BOOL:
            return self.unpack("<B", what) != 0
        if value_type in _SCALAR_FORMATS:
            return self.unpack(_SCALAR_FORMATS[value_type][0], what)
        raise FormatError(f"Unhandled GGUF value type {value_type!r} for {what}")

    def read_array(self, what: str) -> list:
        item_type = self.read_value_type(f"{what} element")
        count = self.unpack("<Q", f"{what} element count")

        if item_type in _SCALAR_FORMATS:
            # Fixed-width elements are decoded in one pass
            if count == 0:
                return []
            dtype = np.dtype(_SCALAR_FORMATS[item_type][1])
            self._require(count * dtype.itemsize, what)
            values = np.frombuffer(self.buffer, dtype=dtype, count=count, offset=self.offset).tolist()
            self.offset += count * dtype.itemsize
            if item_type == GGUFValueType.BOOL:
                return [v != 0 for v in values]
            return values

        return [self.read_value(item_type, f"{what}[{i}]") for i in range(count)]


def _alignment_from(metadata: Dict[str, Any]) -> int:
    alignment = metadata.get("general.alignment", DEFAULT_ALIGNMENT)
    if isinstance(alignment, bool) or not isinstance(alignment, int) or alignment <= 0:
        return DEFAULT_ALIGNMENT
    return alignment


def align_offset(offset: int, alignment: int = DEFAULT_ALIGNMENT) -> int:
    """Round *offset* up to the next multiple of *alignment*."""
    return ((offset + alignment - 1) // alignment) * alignment


def _parse(buffer, size: int) -> GGUFMetadata:
    cursor = _Cursor(buffer, size)

    magic = cursor.unpack("<I", "magic")
    if magic != GGUF_MAGIC:
        raise FormatError(f"Not a GGUF file or wrong magic: {magic:#010x}")

    version = cursor.unpack("<I", "version")
    if version not in SUPPORTED_VERSIONS:
        raise FormatError(f"Unsupported GGUF version {version}, expected one of {SUPPORTED_VERSIONS}")
    tensor_count = cursor.unpack("<Q", "tensor count")
    kv_count = cursor.unpack("<Q", "metadata kv count")

    metadata: Dict[str, Any] = {}
    value_types: Dict[str, GGUFValueType] = {}
    for _ in range(kv_count):
        key = cursor.read_string("metadata key")
        value_type = cursor.read_value_type(key)
        metadata[key] = cursor.read_value(value_type, key)
        value_types[key] = value_type

    tensors: List[GGUFTensorInfo] = []
    for _ in range(tensor_count):
        name = cursor.read_string("tensor name")
        n_dims = cursor.unpack("<I", f"{name} n_dims")
        shape = tuple(cursor.unpack("<Q", f"{name} shape") for _ in range(n_dims))
        type_code = cursor.unpack("<I", f"{name} type")
        offset = cursor.unpack("<Q", f"{name} offset")
        tensors.append(GGUFTensorInfo(name, n_dims, shape, type_code, offset))

    data_start = align_offset(cursor.offset, _alignment_from(metadata))

    return GGUFMetadata(
        version=version,
        tensor_count=tensor_count,
        kv_count=kv_count,
        metadata=metadata,
        tensors=tensors,
        data_start_offset=data_start,
        value_types=value_types,
        file_size=size,
    )


def read_metadata(path: str) -> GGUFMetadata:
    """Read the metadata section and tensor directory of a GGUF file.

    Args:
        path: Path to the .gguf file

    Returns:
        Parsed GGUFMetadata

    Raises:
        FileNotFoundError: If the file does not exist
        FormatError: On bad magic, unknown type tags or truncation
    """
    path = os.fspath(path)
    if not os.path.exists(path):
        raise FileNotFoundError(f"GGUF file not found: {path}")

    size = os.path.getsize(path)
    if size < 4:
        raise FormatError(f"Not a GGUF file (only {size} bytes): {path}")

    with open(path, "rb") as f:
        with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as mm:
            result = _parse(mm, size)

    logger.debug(
        f"Parsed {path}: version {result.version}, {result.kv_count} kv pairs, "
        f"{result.tensor_count} tensors, data at {result.data_start_offset}"
    )
    return result


def main():
    """CLI for inspecting a GGUF file."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    parser = argparse.ArgumentParser(description="Inspect a GGUF model file")
    parser.add_argument("path", type=str, help="Path to .gguf file")
    parser.add_argument("--tensors", type=int, default=10, help="Number of tensors to list")
    args = parser.parse_args()

    metadata = read_metadata(args.path)
    print(f"GGUF Version: {metadata.version}")
    print(f"Tensors: {metadata.tensor_count}")
    print(f"KV Pairs: {metadata.kv_count}")

    for key, value in metadata.metadata.items():
        if isinstance(value, list):
            print(f"{key}: Array[{len(value)}]")
        else:
            print(f"{key}: {value}")

    print("\nTensors:")
    for info in metadata.tensors[:args.tensors]:
        type_name = info.ggml_type.name if info.ggml_type is not None else str(info.type_code)
        print(f"{info.name}: type={type_name}, shape={list(info.shape)}, offset={info.offset}")
    if len(metadata.tensors) > args.tensors:
        print(f"... and {len(metadata.tensors) - args.tensors} more")
    print(f"Data Start Offset: {metadata.data_start_offset}")


if __name__ == "__main__":
    main()
