"""Provider: serves the operations on one target through an engine."""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Mapping
from typing import Any, Union

import jsonschema

from warabi import file_backend as _file_backend  # noqa: F401  (registers "abtio")
from warabi import memory_backend as _memory_backend  # noqa: F401  (registers "memory")
from warabi.backend import Backend, OffsetSizes, WarabiError, create_target, validate_config
from warabi.buffer_wrapper import BufferWrapper
from warabi.engine import Bulk, Engine
from warabi.transfer_manager import (
    TransferManager,
    create_transfer_manager,
    validate_transfer_manager_config,
)

_logger = logging.getLogger("warabi")

BufferLike = Union[BufferWrapper, bytes, bytearray, memoryview]

_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "target": {
            "type": "object",
            "properties": {
                "type": {"type": "string"},
                "config": {"type": "object"},
            },
            "required": ["type"],
        },
        "transfer_manager": {
            "properties": {
                "type": {"type": "string"},
                "config": {"type": "object"},
            },
        },
    },
}


def _as_view(buffer: BufferLike) -> memoryview:
    if isinstance(buffer, BufferWrapper):
        return buffer.data
    return memoryview(buffer).cast("B")


def _parse_config(config: str | Mapping[str, Any] | None) -> Any:
    if config is None:
        return {}
    if isinstance(config, Mapping):
        return copy.deepcopy(dict(config))
    if not config:
        return {}
    try:
        return json.loads(config)
    except json.JSONDecodeError as exc:
        raise WarabiError(f"Could not parse warabi provider configuration: {exc}") from exc


class Provider:
    """Holds a target and a transfer manager and answers the Warabi RPCs."""

    identity = "warabi"

    def __init__(
        self,
        engine: Engine,
        provider_id: int,
        config: str | Mapping[str, Any] | None = None,
        *,
        migration_sender: bool = False,
        migration_receiver: bool = False,
    ) -> None:
        self.engine = engine
        self.provider_id = provider_id
        self.migration_sender = migration_sender
        self.migration_receiver = migration_receiver
        self.target: Backend | None = None
        self.transfer_manager: TransferManager | None = None
        self._closed = False

        json_config = _parse_config(config)
        if migration_sender and not migration_receiver:
            self._log(logging.WARNING,
                      "Provider able only to send will not be able to receive targets")
        elif migration_receiver and not migration_sender:
            self._log(logging.WARNING,
                      "Provider able only to receive will not be able to send targets")

        try:
            jsonschema.validate(json_config, _SCHEMA)
        except jsonschema.ValidationError as exc:
            self._log(logging.ERROR,
                      "Error(s) while validating JSON config for warabi provider: %s",
                      exc.message)
            raise WarabiError(
                "Invalid JSON configuration (see error logs for information)"
            ) from exc

        tm = json_config.get("transfer_manager", {})
        if not isinstance(tm, dict):
            raise WarabiError('"transfer_manager" must be an object')
        tm_type = tm.get("type", "__default__")
        tm_config = tm.get("config", {})
        validate_transfer_manager_config(tm_type, tm_config)
        self.set_transfer_manager(tm_type, tm_config)

        if "target" in json_config:
            target = json_config["target"]
            target_type = target["type"]
            target_config = target.get("config", {})
            validate_config(target_type, target_config)
            self.set_target(target_type, target_config)

        engine.register_provider(provider_id, self)
        self._log(logging.DEBUG, "Registered provider with id %d", provider_id)

    def _log(self, level: int, message: str, *args: Any) -> None:
        _logger.log(level, "[warabi:%d] " + message, self.provider_id, *args)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_config(self) -> str:
        """Return the provider's configuration as a JSON string."""
        config: dict[str, Any] = {}
        if self.target is not None:
            config["target"] = {
                "type": self.target.name,
                "config": json.loads(self.target.get_config()),
            }
        if self.transfer_manager is not None:
            config["transfer_manager"] = {
                "type": self.transfer_manager.name,
                "config": json.loads(self.transfer_manager.get_config()),
            }
        return json.dumps(config, separators=(",", ":"))

    def set_target(self, target_type: str, config: dict[str, Any]) -> None:
        """Create a target of the given type and attach it."""
        self.target = create_target(target_type, self.engine, config)

    def set_transfer_manager(self, tm_type: str, config: dict[str, Any]) -> None:
        """Create a transfer manager of the given type and use it."""
        self.transfer_manager = create_transfer_manager(tm_type, self.engine, config)

    def _require_target(self) -> Backend:
        if self.target is None:
            raise WarabiError("No target found in the provider")
        return self.target

    def _require_transfer_manager(self) -> TransferManager:
        if self.transfer_manager is None:
            raise WarabiError("No transfer manager found in the provider")
        return self.transfer_manager

    def create_rpc(self, size: int) -> bytes:
        """Create a region of ``size`` bytes and return its ID."""
        self._log(logging.DEBUG, "Received create request with size %d", size)
        with self._require_target().create(size) as region:
            return region.region_id

    def write_rpc(
        self,
        region_id: bytes,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
        persist: bool = False,
    ) -> None:
        """Pull data from ``bulk`` into segments of an existing region."""
        self._log(logging.DEBUG, "Received write request")
        target = self._require_target()
        manager = self._require_transfer_manager()
        with target.write(region_id, persist) as region:
            manager.pull(region, offset_sizes, bulk, bulk_offset, persist)

    def write_eager_rpc(
        self,
        region_id: bytes,
        offset_sizes: OffsetSizes,
        buffer: BufferLike,
        persist: bool = False,
    ) -> None:
        """Write data sent along with the request into an existing region."""
        self._log(logging.DEBUG, "Received write_eager request")
        with self._require_target().write(region_id, persist) as region:
            region.write(offset_sizes, _as_view(buffer), persist)

    def persist_rpc(self, region_id: bytes, offset_sizes: OffsetSizes) -> None:
        """Make segments of a region durable."""
        self._log(logging.DEBUG, "Received persist request")
        with self._require_target().write(region_id, True) as region:
            region.persist(offset_sizes)

    def create_write_rpc(
        self,
        bulk: Bulk,
        bulk_offset: int,
        size: int,
        persist: bool = False,
    ) -> bytes:
        """Create a region of ``size`` bytes filled from ``bulk``; return its ID."""
        self._log(logging.DEBUG, "Received create_write request")
        target = self._require_target()
        manager = self._require_transfer_manager()
        with target.create(size) as region:
            manager.pull(region, [(0, size)], bulk, bulk_offset, persist)
            return region.region_id

    def create_write_eager_rpc(self, buffer: BufferLike, persist: bool = False) -> bytes:
        """Create a region holding the data sent along; return its ID."""
        self._log(logging.DEBUG, "Received create_write_eager request")
        data = _as_view(buffer)
        with self._require_target().create(len(data)) as region:
            region.write([(0, len(data))], data, persist)
            return region.region_id

    def read_rpc(
        self,
        region_id: bytes,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
    ) -> None:
        """Push segments of a region into ``bulk``."""
        self._log(logging.DEBUG, "Received read request")
        target = self._require_target()
        manager = self._require_transfer_manager()
        with target.read(region_id) as region:
            manager.push(region, offset_sizes, bulk, bulk_offset)

    def read_eager_rpc(self, region_id: bytes, offset_sizes: OffsetSizes) -> BufferWrapper:
        """Return segments of a region in a buffer sent back with the response."""
        self._log(logging.DEBUG, "Received read_eager request")
        size = sum(s for _, s in offset_sizes)
        with self._require_target().read(region_id) as region:
            data = region.read(offset_sizes)
        if len(data) != size:
            raise WarabiError(f"Expected to read {size} bytes, got {len(data)}")
        result = BufferWrapper()
        result.allocate(size)
        result.data[:] = data
        return result

    def erase_rpc(self, region_id: bytes) -> None:
        """Erase a region."""
        self._log(logging.DEBUG, "Received erase request")
        self._require_target().erase(region_id)

    def close(self) -> None:
        """Deregister from the engine and destroy the target."""
        if self._closed:
            return
        self._closed = True
        self._log(logging.DEBUG, "Deregistering provider")
        if self.engine.providers.get(self.provider_id) is self:
            self.engine.deregister_provider(self.provider_id)
        if self.target is not None:
            self.target.destroy()

    def __enter__(self) -> Provider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()