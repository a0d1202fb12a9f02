"""Transfer managers: move data between bulk buffers and regions."""

from __future__ import annotations

import abc
import json
import queue
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, ClassVar

import jsonschema

from warabi.backend import OffsetSizes, Region, WarabiError

if TYPE_CHECKING:
    from warabi.engine import Bulk, Engine

Segments = list[tuple[int, int]]

_PIPELINE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "num_pools": {"type": "integer", "minimum": 1},
        "num_buffers_per_pool": {"type": "integer", "minimum": 1},
        "first_buffer_size": {"type": "integer", "minimum": 1},
        "buffer_size_multiplier": {"type": "integer", "exclusiveMinimum": 1},
    },
    "required": [
        "num_pools",
        "num_buffers_per_pool",
        "first_buffer_size",
        "buffer_size_multiplier",
    ],
}


class TransferManager(abc.ABC):
    """Strategy used by a provider to move data in and out of regions."""

    name: ClassVar[str] = ""

    @abc.abstractmethod
    def get_config(self) -> str:
        """Return the transfer manager's configuration as a JSON string."""

    @abc.abstractmethod
    def pull(
        self,
        region: Region,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
        persist: bool = False,
    ) -> None:
        """Pull data from ``bulk`` into the given segments of ``region``."""

    @abc.abstractmethod
    def push(
        self,
        region: Region,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
    ) -> None:
        """Push the given segments of ``region`` into ``bulk``."""

    @classmethod
    @abc.abstractmethod
    def from_config(cls, engine: Engine, config: dict[str, Any]) -> TransferManager:
        """Create a transfer manager from its configuration."""

    @classmethod
    @abc.abstractmethod
    def validate(cls, config: dict[str, Any]) -> None:
        """Raise WarabiError if ``config`` is not valid for this manager."""


class DefaultTransferManager(TransferManager):
    """Lets the region move the data itself, in a single transfer."""

    def get_config(self) -> str:
        return "{}"

    def pull(
        self,
        region: Region,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
        persist: bool = False,
    ) -> None:
        region.write_bulk(offset_sizes, bulk, bulk_offset, persist)

    def push(
        self,
        region: Region,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
    ) -> None:
        region.read_bulk(offset_sizes, bulk, bulk_offset)

    @classmethod
    def from_config(cls, engine: Engine, config: dict[str, Any]) -> DefaultTransferManager:
        del engine, config
        return cls()

    @classmethod
    def validate(cls, config: dict[str, Any]) -> None:
        """Any configuration is accepted."""
        del config


def split_segments(
    offset_sizes: OffsetSizes,
    max_buffer_size: int,
    bulk_offset: int = 0,
) -> list[tuple[int, Segments]]:
    """Group segments into batches that each fit in one buffer.

    Segments larger than ``max_buffer_size`` are cut into pieces. Each batch
    is returned with the bulk offset at which its contiguous data starts.
    """
    if max_buffer_size <= 0:
        raise WarabiError(f"Invalid maximum buffer size {max_buffer_size}")
    batches: list[tuple[int, Segments]] = []
    current_size = max_buffer_size
    for offset, remaining in offset_sizes:
        if offset < 0 or remaining < 0:
            raise WarabiError(f"Invalid segment at offset {offset} with size {remaining}")
        while remaining:
            size = min(remaining, max_buffer_size)
            if current_size + size > max_buffer_size:
                batches.append((bulk_offset, []))
                current_size = 0
            batches[-1][1].append((offset, size))
            current_size += size
            bulk_offset += size
            offset += size
            remaining -= size
    return batches


class _BufferPoolSet:
    """Pools of reusable buffers of geometrically growing sizes."""

    def __init__(self, num_pools: int, buffers_per_pool: int, first_size: int, multiplier: int) -> None:
        self._pools: list[tuple[int, queue.SimpleQueue[bytearray]]] = []
        size = first_size
        for _ in range(num_pools):
            pool: queue.SimpleQueue[bytearray] = queue.SimpleQueue()
            for _ in range(buffers_per_pool):
                pool.put(bytearray(size))
            self._pools.append((size, pool))
            size *= multiplier
        self.buffer_count = num_pools * buffers_per_pool

    @property
    def max_buffer_size(self) -> int:
        return self._pools[-1][0]

    @contextmanager
    def buffer(self, size: int) -> Iterator[memoryview]:
        """Borrow a buffer of at least ``size`` bytes; waits for one if needed."""
        pool = next((p for buffer_size, p in self._pools if buffer_size >= size), None)
        if pool is None:
            raise WarabiError(f"No buffer large enough for {size} bytes")
        buffer = pool.get()
        try:
            yield memoryview(buffer)[:size]
        finally:
            pool.put(buffer)


class PipelineTransferManager(TransferManager):
    """Moves data through pooled buffers, several batches in parallel."""

    def __init__(self, engine: Engine, config: dict[str, Any]) -> None:
        self.engine = engine
        self._config = dict(config)
        try:
            self._pools = _BufferPoolSet(
                int(config["num_pools"]),
                int(config["num_buffers_per_pool"]),
                int(config["first_buffer_size"]),
                int(config["buffer_size_multiplier"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise WarabiError(f"Could not create buffer pools: {exc}") from exc

    @property
    def max_buffer_size(self) -> int:
        return self._pools.max_buffer_size

    def get_config(self) -> str:
        return json.dumps(self._config, separators=(",", ":"))

    def _run(self, jobs: Sequence[Callable[[], None]]) -> None:
        if not jobs:
            return
        workers = min(len(jobs), self._pools.buffer_count)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(job) for job in jobs]
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise errors[-1]

    def pull(
        self,
        region: Region,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
        persist: bool = False,
    ) -> None:
        def job(start: int, segments: Segments) -> Callable[[], None]:
            def run() -> None:
                size = sum(s for _, s in segments)
                with self._pools.buffer(size) as buffer:
                    buffer[:] = bulk.pull(start, size)
                    region.write(segments, buffer, persist)
            return run

        batches = split_segments(offset_sizes, self.max_buffer_size, bulk_offset)
        self._run([job(start, segments) for start, segments in batches])

    def push(
        self,
        region: Region,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
    ) -> None:
        def job(start: int, segments: Segments) -> Callable[[], None]:
            def run() -> None:
                size = sum(s for _, s in segments)
                with self._pools.buffer(size) as buffer:
                    data = region.read(segments)
                    buffer[:len(data)] = data
                    bulk.push(start, buffer[:len(data)])
            return run

        batches = split_segments(offset_sizes, self.max_buffer_size, bulk_offset)
        self._run([job(start, segments) for start, segments in batches])

    @classmethod
    def from_config(cls, engine: Engine, config: dict[str, Any]) -> PipelineTransferManager:
        return cls(engine, config)

    @classmethod
    def validate(cls, config: dict[str, Any]) -> None:
        try:
            jsonschema.validate(config, _PIPELINE_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise WarabiError(
                "Error(s) while validating JSON config for warabi "
                f"PipelineTransferManager: {exc.message}"
            ) from exc


_TRANSFER_MANAGERS: dict[str, type[TransferManager]] = {}


def register_transfer_manager(name: str, cls: type[TransferManager]) -> type[TransferManager]:
    """Make the transfer manager class ``cls`` available under ``name``."""
    cls.name = name
    _TRANSFER_MANAGERS[name] = cls
    return cls


def _manager_class(name: str) -> type[TransferManager]:
    try:
        return _TRANSFER_MANAGERS[name]
    except KeyError:
        raise WarabiError(f'Unknown transfer manager type "{name}"') from None


def create_transfer_manager(name: str, engine: Engine, config: dict[str, Any]) -> TransferManager:
    """Create a transfer manager of the named type."""
    return _manager_class(name).from_config(engine, config)


def validate_transfer_manager_config(name: str, config: dict[str, Any]) -> None:
    """Validate a configuration for the named transfer manager type."""
    _manager_class(name).validate(config)


register_transfer_manager("__default__", DefaultTransferManager)
register_transfer_manager("pipeline", PipelineTransferManager)