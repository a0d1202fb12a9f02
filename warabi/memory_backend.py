"""Backend keeping every region in memory."""

from __future__ import annotations

import json
import struct
import threading
from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from warabi.backend import (
    REGION_ID_SIZE,
    Backend,
    MigrationHandle,
    OffsetSizes,
    Region,
    WarabiError,
    register_backend,
)

if TYPE_CHECKING:
    from warabi.engine import Engine

# A region ID holds the region's index followed by its size.
_REGION_ID = struct.Struct("<qQ")


class MemoryRegion(Region):
    """Access to an in-memory region; holds the target's lock until closed."""

    def __init__(self, region_id: bytes, buffer: bytearray, lock: threading.Lock) -> None:
        super().__init__(region_id)
        self._buffer = buffer
        self._lock: threading.Lock | None = lock

    def _segments(self, offset_sizes: OffsetSizes) -> Iterator[tuple[int, int]]:
        for offset, size in offset_sizes:
            if size == 0:
                continue
            if offset < 0 or size < 0 or offset + size > len(self._buffer):
                raise WarabiError(
                    f"Segment at offset {offset} with size {size} is outside "
                    f"of region of size {len(self._buffer)}"
                )
            yield offset, size

    def write(self, offset_sizes: OffsetSizes, data: bytes, persist: bool = False) -> None:
        segments = list(self._segments(offset_sizes))
        total = sum(size for _, size in segments)
        if len(data) < total:
            raise WarabiError(f"Expected {total} bytes of data, got {len(data)}")
        position = 0
        for offset, size in segments:
            self._buffer[offset:offset + size] = data[position:position + size]
            position += size

    def read(self, offset_sizes: OffsetSizes) -> bytes:
        return b"".join(
            bytes(self._buffer[offset:offset + size])
            for offset, size in self._segments(offset_sizes)
        )

    def persist(self, offset_sizes: OffsetSizes) -> None:
        """Check the segments lie within the region; memory needs no flushing."""
        for _ in self._segments(offset_sizes):
            pass

    def close(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None


class MemoryTarget(Backend):
    """Target storing regions as byte arrays in memory."""

    def __init__(self, engine: Engine, config: dict[str, Any] | None = None) -> None:
        self.engine = engine
        self._config = dict(config or {})
        self._regions: list[bytearray] = []
        self._lock = threading.Lock()

    def get_config(self) -> str:
        return json.dumps(self._config, separators=(",", ":"))

    def create(self, size: int) -> MemoryRegion:
        if size < 0:
            raise WarabiError(f"Invalid region size {size}")
        self._lock.acquire()
        buffer = bytearray(size)
        self._regions.append(buffer)
        region_id = _REGION_ID.pack(len(self._regions) - 1, size)
        return MemoryRegion(region_id, buffer, self._lock)

    @staticmethod
    def _index(region_id: bytes) -> int:
        if len(region_id) != REGION_ID_SIZE:
            raise WarabiError("Invalid RegionID information")
        return _REGION_ID.unpack(bytes(region_id))[0]

    def _open(self, region_id: bytes) -> MemoryRegion:
        index = self._index(region_id)
        if index < 0:
            raise WarabiError("Invalid RegionID information")
        self._lock.acquire()
        if index >= len(self._regions):
            self._lock.release()
            raise WarabiError("Invalid RegionID information")
        return MemoryRegion(region_id, self._regions[index], self._lock)

    def write(self, region_id: bytes, persist: bool = False) -> MemoryRegion:
        return self._open(region_id)

    def read(self, region_id: bytes) -> MemoryRegion:
        return self._open(region_id)

    def erase(self, region_id: bytes) -> None:
        index = self._index(region_id)
        with self._lock:
            if index < 0 or index >= len(self._regions):
                raise WarabiError("Invalid RegionID")
            self._regions[index].clear()

    def destroy(self) -> None:
        with self._lock:
            self._regions.clear()

    def start_migration(self, remove_source: bool = True) -> MigrationHandle:
        with self._lock:
            count = len(self._regions)
        raise WarabiError(
            f"startMigration operation not implemented: memory target holding "
            f"{count} region(s) has no files to migrate"
        )

    @classmethod
    def from_config(cls, engine: Engine, config: dict[str, Any]) -> MemoryTarget:
        return cls(engine, config)

    @classmethod
    def recover(cls, engine: Engine, config: dict[str, Any], filenames: Sequence[str]) -> MemoryTarget:
        names = ", ".join(filenames) or "no files"
        raise WarabiError(f"Memory targets cannot be recovered from {names}")

    @classmethod
    def validate(cls, config: dict[str, Any]) -> None:
        """Accept any JSON object as configuration."""
        if not isinstance(config, Mapping):
            raise WarabiError("Memory target configuration must be a JSON object")


register_backend("memory", MemoryTarget)