"""In-process transport: engines addressed by string, providers and bulk buffers."""

from __future__ import annotations

import itertools
import threading
from types import MappingProxyType
from typing import Any, Callable, Mapping

from warabi.backend import WarabiError

RPC_HANDLERS: Mapping[str, str] = MappingProxyType({
    "warabi_create": "create_rpc",
    "warabi_write": "write_rpc",
    "warabi_write_eager": "write_eager_rpc",
    "warabi_persist": "persist_rpc",
    "warabi_create_write": "create_write_rpc",
    "warabi_create_write_eager": "create_write_eager_rpc",
    "warabi_read": "read_rpc",
    "warabi_read_eager": "read_eager_rpc",
    "warabi_erase": "erase_rpc",
})

_registry: dict[str, Engine] = {}
_registry_lock = threading.Lock()
_ids = itertools.count()


class Bulk:
    """A memory buffer exposed for remote pulls and pushes."""

    def __init__(self, buffer: bytes | bytearray | memoryview) -> None:
        self._view = memoryview(buffer).cast("B")

    @property
    def size(self) -> int:
        return len(self._view)

    @property
    def readonly(self) -> bool:
        return self._view.readonly

    def _check(self, offset: int, size: int) -> None:
        if offset < 0 or size < 0 or offset + size > len(self._view):
            raise WarabiError(
                f"Bulk access at offset {offset} with size {size} "
                f"exceeds buffer of size {len(self._view)}"
            )

    def pull(self, offset: int, size: int) -> bytes:
        """Return ``size`` bytes starting at ``offset``."""
        self._check(offset, size)
        return bytes(self._view[offset:offset + size])

    def push(self, offset: int, data: bytes) -> None:
        """Copy ``data`` into the buffer at ``offset``."""
        if self._view.readonly:
            raise WarabiError("Cannot push into a read-only bulk buffer")
        data = memoryview(data).cast("B")
        self._check(offset, len(data))
        self._view[offset:offset + len(data)] = data


class Engine:
    """An endpoint that hosts providers and sends RPCs to other engines."""

    def __init__(self, protocol: str = "na+sm") -> None:
        self.protocol = protocol
        self._providers: dict[int, Any] = {}
        self._lock = threading.Lock()
        self._finalized = False
        with _registry_lock:
            self.address = f"{protocol}://{next(_ids)}"
            _registry[self.address] = self

    @property
    def providers(self) -> Mapping[int, Any]:
        """Read-only view of the registered providers by id."""
        return MappingProxyType(self._providers)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _ensure_alive(self) -> None:
        if self._finalized:
            raise WarabiError(f"Engine {self.address} has been finalized")

    def register_provider(self, provider_id: int, provider: Any) -> None:
        """Attach ``provider`` to this engine under ``provider_id``."""
        self._ensure_alive()
        with self._lock:
            if provider_id in self._providers:
                raise WarabiError(f"A provider with id {provider_id} is already registered")
            self._providers[provider_id] = provider

    def deregister_provider(self, provider_id: int) -> None:
        """Detach the provider registered under ``provider_id``, if any."""
        with self._lock:
            self._providers.pop(provider_id, None)

    def lookup(self, address: str) -> Engine:
        """Return the engine listening at ``address``."""
        self._ensure_alive()
        with _registry_lock:
            engine = _registry.get(address)
        if engine is None:
            raise WarabiError(f"Could not lookup address {address}")
        return engine

    def _handler(self, provider_id: int, rpc: str) -> Callable[..., Any]:
        with self._lock:
            provider = self._providers.get(provider_id)
        if provider is None:
            raise WarabiError(f"No provider with id {provider_id} at {self.address}")
        method = RPC_HANDLERS.get(rpc)
        if method is None:
            raise WarabiError(f"Unknown RPC {rpc}")
        return getattr(provider, method)

    def call(self, address: str, provider_id: int, rpc: str, *args: Any) -> Any:
        """Invoke ``rpc`` on a provider of the engine at ``address``."""
        return self.lookup(address)._handler(provider_id, rpc)(*args)

    def finalize(self) -> None:
        """Stop the engine; its providers are detached and its address released."""
        with _registry_lock:
            if _registry.get(self.address) is self:
                del _registry[self.address]
        with self._lock:
            self._providers.clear()
        self._finalized = True

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.finalize()