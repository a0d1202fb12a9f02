"""Client side: handles through which remote targets are accessed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from warabi.backend import WarabiError
from warabi.buffer_wrapper import BufferWrapper
from warabi.engine import Bulk, Engine

DEFAULT_EAGER_THRESHOLD = 2048


@dataclass
class TargetHandle:
    """Handle on the target of a provider at a given address.

    Data up to the eager thresholds travels along with the requests;
    larger data is exposed as a bulk buffer for the provider to transfer.
    """

    client: Client | None = None
    address: str = ""
    provider_id: int = 0
    eager_write_threshold: int = DEFAULT_EAGER_THRESHOLD
    eager_read_threshold: int = DEFAULT_EAGER_THRESHOLD

    def __bool__(self) -> bool:
        return self.client is not None

    def _call(self, rpc: str, *args: Any) -> Any:
        if self.client is None or self.client.engine is None:
            raise WarabiError("Invalid TargetHandle object")
        return self.client.engine.call(self.address, self.provider_id, rpc, *args)

    def create(self, size: int) -> bytes:
        """Create a region of ``size`` bytes and return its ID."""
        return self._call("warabi_create", size)

    def write(self, region_id: bytes, offset: int, data: bytes, persist: bool = False) -> None:
        """Write ``data`` at ``offset`` in a region."""
        view = memoryview(data).cast("B")
        segments = [(offset, len(view))]
        if len(view) <= self.eager_write_threshold:
            self._call("warabi_write_eager", region_id, segments, BufferWrapper.ref(view), persist)
        else:
            self._call("warabi_write", region_id, segments, Bulk(view), 0, persist)

    def persist(self, region_id: bytes, offset: int, size: int) -> None:
        """Make ``size`` bytes at ``offset`` in a region durable."""
        self._call("warabi_persist", region_id, [(offset, size)])

    def create_and_write(self, data: bytes, persist: bool = False) -> bytes:
        """Create a region holding ``data`` and return its ID."""
        view = memoryview(data).cast("B")
        if len(view) <= self.eager_write_threshold:
            return self._call("warabi_create_write_eager", BufferWrapper.ref(view), persist)
        return self._call("warabi_create_write", Bulk(view), 0, len(view), persist)

    def read(self, region_id: bytes, offset: int, size: int) -> bytes:
        """Return ``size`` bytes read at ``offset`` in a region."""
        segments = [(offset, size)]
        if size <= self.eager_read_threshold:
            return bytes(self._call("warabi_read_eager", region_id, segments))
        buffer = bytearray(size)
        self._call("warabi_read", region_id, segments, Bulk(buffer), 0)
        return bytes(buffer)

    def erase(self, region_id: bytes) -> None:
        """Erase a region."""
        self._call("warabi_erase", region_id)


class Client:
    """Entry point for accessing targets through an engine."""

    def __init__(self, engine: Engine | None = None) -> None:
        self.engine = engine

    def __bool__(self) -> bool:
        return self.engine is not None

    def make_target_handle(self, address: str, provider_id: int = 0) -> TargetHandle:
        """Return a handle on the target of the provider at ``address``."""
        if self.engine is None:
            raise WarabiError("Invalid Client object")
        self.engine.lookup(address)
        return TargetHandle(self, address, provider_id)

    def get_config(self) -> str:
        """Return the client's configuration as a JSON string."""
        return "{}"