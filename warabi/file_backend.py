"""Backend storing every region of a target in one file."""

from __future__ import annotations

import errno
import json
import os
import struct
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jsonschema

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

# A region ID holds the region's offset in the file followed by its size.
_REGION_ID = struct.Struct("<QQ")
_MAX_OFFSET = 2**63 - 1
_ZERO_CHUNK = 1 << 20

_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string"},
        "create_if_missing": {"type": "boolean"},
        "override_if_exists": {"type": "boolean"},
        "alignment": {"type": "integer", "minimum": 8, "multipleOf": 8},
        "sync": {"type": "boolean"},
        "directio": {"type": "boolean"},
        "abt_io": {"type": "object"},
    },
    "required": ["path"],
}


def _align_up(value: int, alignment: int) -> int:
    return (value + (alignment - 1)) & ~(alignment - 1)


def _reason(exc: BaseException) -> str:
    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    return str(exc)


def _check_range(offset: int, size: int, action: str) -> None:
    if offset < 0 or size < 0 or offset + size > _MAX_OFFSET:
        raise WarabiError(f"{action} failed: {os.strerror(errno.EINVAL)}")


def _pwrite_all(fd: int, data: bytes | memoryview, offset: int) -> None:
    view = memoryview(data).cast("B")
    while view:
        written = os.pwrite(fd, view, offset)
        view = view[written:]
        offset += written


def _pread_all(fd: int, size: int, offset: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = os.pread(fd, remaining, offset)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
        offset += len(chunk)
    # Bytes past the end of the file read as zeros.
    return b"".join(chunks).ljust(size, b"\0")


def _decode_region_id(region_id: bytes) -> tuple[int, int]:
    if len(region_id) != REGION_ID_SIZE:
        raise WarabiError("Invalid RegionID information")
    return _REGION_ID.unpack(bytes(region_id))


class _RWLock:
    """Readers-writer lock: regions share it, a migration takes it alone."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: not self._writer)
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class FileRegion(Region):
    """Access to a region of a file target; blocks migrations until closed."""

    def __init__(self, target: FileTarget, region_id: bytes, region_offset: int) -> None:
        super().__init__(region_id)
        self._target = target
        self.region_offset = region_offset
        self._open = True

    def write(self, offset_sizes: OffsetSizes, data: bytes, persist: bool = False) -> None:
        view = memoryview(data).cast("B")
        total = sum(size for _, size in offset_sizes)
        if len(view) < total:
            raise WarabiError(f"Expected {total} bytes of data, got {len(view)}")
        fd = self._target._require_fd()
        position = 0
        for offset, size in offset_sizes:
            file_offset = self.region_offset + offset
            _check_range(file_offset, size, "Write")
            try:
                _pwrite_all(fd, view[position:position + size], file_offset)
            except (OSError, OverflowError) as exc:
                raise WarabiError(f"Write failed: {_reason(exc)}") from exc
            position += size
        if persist:
            self._target._sync()

    def read(self, offset_sizes: OffsetSizes) -> bytes:
        fd = self._target._require_fd()
        parts = []
        for offset, size in offset_sizes:
            file_offset = self.region_offset + offset
            _check_range(file_offset, size, "Read")
            try:
                parts.append(_pread_all(fd, size, file_offset))
            except (OSError, OverflowError) as exc:
                raise WarabiError(f"Read failed: {_reason(exc)}") from exc
        return b"".join(parts)

    def persist(self, offset_sizes: OffsetSizes) -> None:
        """Flush the whole file; the segments are not needed for that."""
        del offset_sizes
        self._target._sync()

    def close(self) -> None:
        if self._open:
            self._open = False
            self._target._migration_lock.release_read()


class FileMigrationHandle(MigrationHandle):
    """Holds the target exclusively while its file is being migrated."""

    def __init__(self, target: FileTarget, remove_source: bool) -> None:
        self._target = target
        self.remove_source = remove_source
        self._closed = False
        target._migration_lock.acquire_write()

    @property
    def root(self) -> str:
        head, sep, _ = self._target.filename.rpartition("/")
        return head if sep else ""

    @property
    def files(self) -> list[str]:
        return [self._target.filename.rpartition("/")[2]]

    def cancel(self) -> None:
        self.remove_source = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.remove_source:
                self._target.destroy()
        finally:
            self._target._migration_lock.release_write()


class FileTarget(Backend):
    """Target whose regions are consecutive, aligned ranges of one file."""

    def __init__(self, engine: Engine, config: dict[str, Any], fd: int, file_size: int) -> None:
        self.engine = engine
        self._config = dict(config)
        self._fd: int | None = fd
        self._file_size = file_size
        self._size_lock = threading.Lock()
        self._migration_lock = _RWLock()
        self.filename: str = self._config["path"]
        self.alignment: int = self._config.get("alignment", 8)

    def __del__(self) -> None:
        fd = getattr(self, "_fd", None)
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

    def _require_fd(self) -> int:
        if self._fd is None:
            raise WarabiError(f"File {self.filename} has been destroyed")
        return self._fd

    def _sync(self) -> None:
        sync = getattr(os, "fdatasync", os.fsync)
        try:
            sync(self._require_fd())
        except OSError as exc:
            raise WarabiError(f"Persist failed: {_reason(exc)}") from exc

    def get_config(self) -> str:
        return json.dumps(self._config, separators=(",", ":"))

    def create(self, size: int) -> FileRegion:
        if size < 0:
            raise WarabiError(f"Invalid region size {size}")
        aligned = _align_up(size, self.alignment)
        with self._size_lock:
            offset = self._file_size
            self._file_size += aligned
        region_id = _REGION_ID.pack(offset, aligned)
        self._migration_lock.acquire_read()
        try:
            fd = self._require_fd()
            _pwrite_all(fd, bytes(aligned), offset)
        except (OSError, OverflowError) as exc:
            self._migration_lock.release_read()
            raise WarabiError(f"Could not write region in create: {_reason(exc)}") from exc
        except BaseException:
            self._migration_lock.release_read()
            raise
        return FileRegion(self, region_id, offset)

    def _open_region(self, region_id: bytes) -> FileRegion:
        offset, _ = _decode_region_id(region_id)
        self._migration_lock.acquire_read()
        if self._fd is None:
            self._migration_lock.release_read()
            raise WarabiError(f"File {self.filename} has been destroyed")
        return FileRegion(self, region_id, offset)

    def write(self, region_id: bytes, persist: bool = False) -> FileRegion:
        return self._open_region(region_id)

    def read(self, region_id: bytes) -> FileRegion:
        return self._open_region(region_id)

    def erase(self, region_id: bytes) -> None:
        offset, size = _decode_region_id(region_id)
        self._migration_lock.acquire_read()
        try:
            fd = self._require_fd()
            if offset > _MAX_OFFSET or size > _MAX_OFFSET or offset + size > _MAX_OFFSET:
                raise WarabiError("Failed to erase region")
            try:
                # The file keeps its size: only existing bytes are cleared.
                end = min(offset + size, os.fstat(fd).st_size)
                while offset < end:
                    chunk = min(_ZERO_CHUNK, end - offset)
                    _pwrite_all(fd, bytes(chunk), offset)
                    offset += chunk
            except OSError as exc:
                raise WarabiError(f"Failed to erase region: {_reason(exc)}") from exc
        finally:
            self._migration_lock.release_read()

    def destroy(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            finally:
                self._fd = None
        Path(self.filename).unlink(missing_ok=True)

    def start_migration(self, remove_source: bool = True) -> FileMigrationHandle:
        return FileMigrationHandle(self, remove_source)

    @staticmethod
    def _open_file(path: str, config: dict[str, Any]) -> tuple[int, int]:
        directio = bool(config.get("directio", False))
        o_direct = getattr(os, "O_DIRECT", None)
        if directio and o_direct is None:
            config["directio"] = directio = False
        flags = os.O_RDWR | (o_direct if directio else 0)
        try:
            fd = os.open(path, flags)
        except OSError as exc:
            if exc.errno == errno.EINVAL and directio:
                config["directio"] = False
                try:
                    fd = os.open(path, os.O_RDWR)
                except OSError as retry_exc:
                    raise WarabiError(
                        f"Failed to open file {path}: {_reason(retry_exc)}"
                    ) from retry_exc
            else:
                raise WarabiError(f"Failed to open file {path}: {_reason(exc)}") from exc
        try:
            size = os.fstat(fd).st_size
        except OSError as exc:
            os.close(fd)
            raise WarabiError(f"Could not fstat {path}: {_reason(exc)}") from exc
        return fd, size

    @classmethod
    def from_config(cls, engine: Engine, config: dict[str, Any]) -> FileTarget:
        config = dict(config)
        path = config.get("path")
        if not isinstance(path, str):
            raise WarabiError('Missing "path" in file target configuration')
        file = Path(path)
        exists = file.exists()
        if exists and config.get("override_if_exists", False):
            file.unlink()
            exists = False
        if not exists:
            try:
                file.parent.mkdir(parents=True, exist_ok=True)
                os.close(os.open(path, os.O_EXCL | os.O_WRONLY | os.O_CREAT, 0o644))
            except OSError as exc:
                raise WarabiError(f"Could not open file {path}: {_reason(exc)}") from exc
        fd, size = cls._open_file(path, config)
        return cls(engine, config, fd, size)

    @classmethod
    def recover(cls, engine: Engine, config: dict[str, Any], filenames: Sequence[str]) -> FileTarget:
        if not filenames:
            raise WarabiError("No file to recover from")
        if len(filenames) > 1:
            raise WarabiError("File target cannot recover from multiple files")
        config = dict(config)
        path = filenames[0]
        config["path"] = path
        if not Path(path).exists():
            raise WarabiError(f"File {path} not found")
        fd, size = cls._open_file(path, config)
        return cls(engine, config, fd, size)

    @classmethod
    def validate(cls, config: dict[str, Any]) -> None:
        try:
            jsonschema.validate(config, _SCHEMA)
        except jsonschema.ValidationError as exc:
            raise WarabiError(
                f"Error(s) while validating JSON config for warabi file target: {exc.message}"
            ) from exc
        path = config["path"]
        if not Path(path).exists() and not config.get("create_if_missing", False):
            raise WarabiError(f"File {path} does not exist")


register_backend("abtio", FileTarget)