"""Byte buffer that either references caller memory or owns its own."""

from __future__ import annotations

import struct

from warabi.backend import WarabiError

_SIZE = struct.Struct("<Q")


class BufferWrapper:
    """A byte buffer serialized as a 64-bit size followed by its content."""

    __slots__ = ("_data", "_owned")

    def __init__(self) -> None:
        self._data = memoryview(b"")
        self._owned = False

    @classmethod
    def ref(cls, data: bytes | bytearray | memoryview) -> BufferWrapper:
        """Wrap existing memory without copying it."""
        wrapper = cls()
        wrapper._data = memoryview(data).cast("B")
        return wrapper

    def allocate(self, size: int) -> None:
        """Replace the content with a fresh zeroed buffer of ``size`` bytes."""
        if size < 0:
            raise WarabiError(f"Invalid buffer size {size}")
        self._data = memoryview(bytearray(size))
        self._owned = size > 0

    @property
    def data(self) -> memoryview:
        return self._data

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def owned(self) -> bool:
        return self._owned

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return self._data.tobytes()

    def save(self) -> bytes:
        """Serialize as a little-endian 64-bit size followed by the bytes."""
        return _SIZE.pack(len(self._data)) + self._data.tobytes()

    @classmethod
    def load(cls, raw: bytes | bytearray | memoryview) -> BufferWrapper:
        """Deserialize a buffer produced by ``save`` into an owned buffer."""
        raw = memoryview(raw).cast("B")
        if len(raw) < _SIZE.size:
            raise WarabiError("Serialized buffer is too short to hold its size")
        (size,) = _SIZE.unpack_from(raw)
        end = _SIZE.size + size
        if len(raw) < end:
            raise WarabiError(
                f"Serialized buffer announces {size} bytes but holds {len(raw) - _SIZE.size}"
            )
        wrapper = cls()
        if size:
            wrapper._data = memoryview(bytearray(raw[_SIZE.size:end]))
            wrapper._owned = True
        return wrapper