"""Storage backends: regions, migration handles and the backend registry."""

from __future__ import annotations

import abc
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from warabi.engine import Bulk, Engine

REGION_ID_SIZE = 16

OffsetSizes = Sequence[tuple[int, int]]


class WarabiError(Exception):
    """Raised when a Warabi operation fails."""


class Region(abc.ABC):
    """Access to one region of a target, for reading and/or writing.

    A region may hold a lock on its target until it is closed, so it is
    meant to be used as a context manager.
    """

    def __init__(self, region_id: bytes) -> None:
        self.region_id = bytes(region_id)

    @abc.abstractmethod
    def write(self, offset_sizes: OffsetSizes, data: bytes, persist: bool = False) -> None:
        """Write ``data`` contiguously into the given (offset, size) segments."""

    def write_bulk(
        self,
        offset_sizes: OffsetSizes,
        bulk: Bulk,
        bulk_offset: int = 0,
        persist: bool = False,
    ) -> None:
        """Pull data from ``bulk`` and write it into the given segments."""
        size = sum(size for _, size in offset_sizes)
        if size == 0:
            return
        self.write(offset_sizes, bulk.pull(bulk_offset, size), persist)

    @abc.abstractmethod
    def read(self, offset_sizes: OffsetSizes) -> bytes:
        """Return the concatenated content of the given segments."""

    def read_bulk(self, offset_sizes: OffsetSizes, bulk: Bulk, bulk_offset: int = 0) -> None:
        """Read the given segments and push them into ``bulk``."""
        data = self.read(offset_sizes)
        if data:
            bulk.push(bulk_offset, data)

    @abc.abstractmethod
    def persist(self, offset_sizes: OffsetSizes) -> None:
        """Make the given segments durable."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the access to the region."""

    def __enter__(self) -> Region:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MigrationHandle(abc.ABC):
    """Handle on an ongoing migration of a target's files."""

    @property
    @abc.abstractmethod
    def root(self) -> str:
        """Directory the migrated files are relative to."""

    @property
    @abc.abstractmethod
    def files(self) -> list[str]:
        """Files to migrate, relative to ``root``."""

    @abc.abstractmethod
    def cancel(self) -> None:
        """Cancel the migration: the source will be kept."""

    @abc.abstractmethod
    def close(self) -> None:
        """Terminate the migration."""

    def __enter__(self) -> MigrationHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Backend(abc.ABC):
    """A storage target holding regions."""

    name: ClassVar[str] = ""

    @abc.abstractmethod
    def get_config(self) -> str:
        """Return the target's configuration as a JSON string."""

    @abc.abstractmethod
    def create(self, size: int) -> Region:
        """Create a region of ``size`` bytes and return write access to it."""

    @abc.abstractmethod
    def write(self, region_id: bytes, persist: bool = False) -> Region:
        """Return write access to an existing region."""

    @abc.abstractmethod
    def read(self, region_id: bytes) -> Region:
        """Return read access to an existing region."""

    @abc.abstractmethod
    def erase(self, region_id: bytes) -> None:
        """Erase a region."""

    @abc.abstractmethod
    def destroy(self) -> None:
        """Destroy the underlying storage."""

    @abc.abstractmethod
    def start_migration(self, remove_source: bool = True) -> MigrationHandle:
        """Start migrating the target's storage."""

    @classmethod
    @abc.abstractmethod
    def from_config(cls, engine: Engine, config: dict[str, Any]) -> Backend:
        """Create a target from its configuration."""

    @classmethod
    @abc.abstractmethod
    def recover(cls, engine: Engine, config: dict[str, Any], filenames: Sequence[str]) -> Backend:
        """Re-open a target from migrated files."""

    @classmethod
    @abc.abstractmethod
    def validate(cls, config: dict[str, Any]) -> None:
        """Raise WarabiError if ``config`` is not valid for this backend."""


_BACKENDS: dict[str, type[Backend]] = {}


def register_backend(name: str, cls: type[Backend]) -> type[Backend]:
    """Make the backend class ``cls`` available under ``name``."""
    cls.name = name
    _BACKENDS[name] = cls
    return cls


def _backend_class(backend_name: str) -> type[Backend]:
    try:
        return _BACKENDS[backend_name]
    except KeyError:
        raise WarabiError(f'Unknown target type "{backend_name}"') from None


def create_target(backend_name: str, engine: Engine, config: dict[str, Any]) -> Backend:
    """Create a target of the named backend type."""
    return _backend_class(backend_name).from_config(engine, config)


def recover_target(
    backend_name: str,
    engine: Engine,
    config: dict[str, Any],
    filenames: Sequence[str],
) -> Backend:
    """Recover a target of the named backend type from files."""
    return _backend_class(backend_name).recover(engine, config, filenames)


def validate_config(backend_name: str, config: dict[str, Any]) -> None:
    """Validate a configuration for the named backend type."""
    _backend_class(backend_name).validate(config)