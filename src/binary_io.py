"""
Little-endian binary sink/source used by the engine's persistence layer.

Every ``write``/``read`` pair in the engine goes through these two classes so
that the on-disk layout has a single definition of its primitive types.
Reads that run past the end of the stream raise SerializationError.
"""
import struct
from typing import BinaryIO, Tuple

import numpy as np

from fitting_errors import SerializationError

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_F64 = struct.Struct("<d")

_READ_CHUNK = 1 << 24


class BinaryWriter:
    """Write primitive values and arrays to a binary stream."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def write_bool(self, value: bool):
        self.stream.write(_U8.pack(1 if value else 0))

    def write_u8(self, value: int):
        self.stream.write(_U8.pack(int(value)))

    def write_u32(self, value: int):
        self.stream.write(_U32.pack(int(value)))

    def write_u64(self, value: int):
        self.stream.write(_U64.pack(int(value)))

    def write_f64(self, value: float):
        self.stream.write(_F64.pack(float(value)))

    def write_vec3(self, values):
        arr = np.asarray(values, dtype="<f8").reshape(3)
        self.stream.write(arr.tobytes())

    def write_f64_array(self, arr: np.ndarray):
        """Raw float64 payload in C order; the shape is not written."""
        self.stream.write(np.ascontiguousarray(arr, dtype="<f8").tobytes())

    def write_i64_array(self, arr: np.ndarray):
        self.stream.write(np.ascontiguousarray(arr, dtype="<i8").tobytes())


class BinaryReader:
    """Read what BinaryWriter wrote, failing loudly on short reads."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def _read_exact(self, n: int) -> bytes:
        # Never ask the stream for more than _READ_CHUNK bytes at once.
        if n <= _READ_CHUNK:
            data = self.stream.read(n)
            got = 0 if data is None else len(data)
        else:
            buf = bytearray()
            while len(buf) < n:
                chunk = self.stream.read(min(_READ_CHUNK, n - len(buf)))
                if not chunk:
                    break
                buf += chunk
            data, got = bytes(buf), len(buf)
        if got != n:
            raise SerializationError(
                f"Unexpected end of stream: wanted {n} bytes, got {got}"
            )
        return data

    def read_bool(self) -> bool:
        raw = _U8.unpack(self._read_exact(_U8.size))[0]
        if raw not in (0, 1):
            raise SerializationError(f"Invalid boolean byte: {raw}")
        return raw == 1

    def read_u8(self) -> int:
        return _U8.unpack(self._read_exact(_U8.size))[0]

    def read_u32(self) -> int:
        return _U32.unpack(self._read_exact(_U32.size))[0]

    def read_u64(self) -> int:
        return _U64.unpack(self._read_exact(_U64.size))[0]

    def read_f64(self) -> float:
        return _F64.unpack(self._read_exact(_F64.size))[0]

    def read_vec3(self) -> np.ndarray:
        return self.read_f64_array((3,))

    def read_f64_array(self, shape: Tuple[int, ...]) -> np.ndarray:
        count = int(np.prod(shape, dtype=np.int64))
        data = self._read_exact(count * 8)
        return np.frombuffer(data, dtype="<f8").astype(np.float64).reshape(shape)

    def read_i64_array(self, shape: Tuple[int, ...]) -> np.ndarray:
        count = int(np.prod(shape, dtype=np.int64))
        data = self._read_exact(count * 8)
        return np.frombuffer(data, dtype="<i8").astype(np.int64).reshape(shape)
