from __future__ import annotations

import struct
from typing import BinaryIO

import numpy as np

READ_CHUNK_SIZE = 1 << 20


class ForestFormatError(ValueError):
    """Raised when a serialized forest or options block is malformed."""


class BinaryWriter:
    """Little-endian primitive writer over a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream

    def write_bytes(self, data: bytes) -> None:
        self.stream.write(data)

    def write_int(self, value: int) -> None:
        self.stream.write(struct.pack("<q", int(value)))

    def write_float(self, value: float) -> None:
        self.stream.write(struct.pack("<d", float(value)))

    def write_bool(self, value: bool) -> None:
        self.stream.write(struct.pack("<?", bool(value)))

    def write_byte(self, value: int) -> None:
        self.stream.write(struct.pack("<B", int(value)))

    def write_array(self, values: np.ndarray, dtype: str) -> None:
        """Write the raw elements of an array; the shape is the caller's business."""
        blob = np.ascontiguousarray(values, dtype=dtype).tobytes()
        self.stream.write(blob)


class BinaryReader:
    """Counterpart of BinaryWriter; short reads raise ForestFormatError."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream

    def _remaining(self) -> int | None:
        if not self.stream.seekable():
            return None
        position = self.stream.tell()
        end = self.stream.seek(0, 2)
        self.stream.seek(position)
        return end - position

    def read_bytes(self, size: int) -> bytes:
        # Sizes come from the stream itself, so check them before allocating.
        remaining = self._remaining()
        if remaining is not None and size > remaining:
            raise ForestFormatError(f"Unexpected end of stream: wanted {size} bytes, got {remaining}")

        chunks = []
        got = 0
        while got < size:
            chunk = self.stream.read(min(size - got, READ_CHUNK_SIZE))
            if not chunk:
                break
            chunks.append(chunk)
            got += len(chunk)
        if got != size:
            raise ForestFormatError(f"Unexpected end of stream: wanted {size} bytes, got {got}")
        return b"".join(chunks)

    def read_int(self) -> int:
        return int(struct.unpack("<q", self.read_bytes(8))[0])

    def read_float(self) -> float:
        return float(struct.unpack("<d", self.read_bytes(8))[0])

    def read_bool(self) -> bool:
        return bool(struct.unpack("<?", self.read_bytes(1))[0])

    def read_byte(self) -> int:
        return int(struct.unpack("<B", self.read_bytes(1))[0])

    def read_count(self, what: str) -> int:
        value = self.read_int()
        if value < 0:
            raise ForestFormatError(f"Negative {what}: {value}")
        return value

    def read_array(self, count: int, dtype: str) -> np.ndarray:
        dt = np.dtype(dtype)
        if count == 0:
            return np.empty(0, dtype=dt)
        blob = self.read_bytes(count * dt.itemsize)
        # frombuffer views are read-only; callers get a private writable copy
        return np.frombuffer(blob, dtype=dt, count=count).copy()
