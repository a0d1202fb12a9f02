"""Moving a provider's target, with its files, to another provider."""

from __future__ import annotations

import copy
import json
import logging
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import jsonschema

from warabi.backend import Backend, WarabiError, recover_target, validate_config
from warabi.provider import Provider

_logger = logging.getLogger("warabi")

_COPY_CHUNK = 1 << 20

_OPTIONS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "new_root": {"type": "string"},
        "transfer_size": {"type": "integer", "minimum": 0},
        "merge_config": {"type": "object"},
        "remove_source": {"type": "boolean"},
    },
}


def _log_error(provider: Provider, message: str) -> None:
    _logger.error("[warabi:%d] %s", provider.provider_id, message)


def validate_migration_options(options: str | Mapping[str, Any] | None) -> dict[str, Any]:
    """Parse migration options (JSON text or mapping) and check them."""
    if options is None:
        parsed: Any = {}
    elif isinstance(options, Mapping):
        parsed = copy.deepcopy(dict(options))
    elif not options:
        parsed = {}
    else:
        try:
            parsed = json.loads(options)
        except json.JSONDecodeError as exc:
            raise WarabiError(f"Invalid JSON migration options: {exc}") from exc
    try:
        jsonschema.validate(parsed, _OPTIONS_SCHEMA)
    except jsonschema.ValidationError as exc:
        _logger.error("Error(s) while validating JSON migration options: %s", exc.message)
        raise WarabiError(f"Invalid JSON migration options: {exc.message}") from exc
    return parsed


def _merge(base: dict[str, Any], update: Mapping[str, Any]) -> None:
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def before_migration(provider: Provider, target_type: str, config: dict[str, Any]) -> None:
    """Check that ``provider`` can accept a target of this type and configuration."""
    if provider.target is not None:
        message = "Cannot accept migration: target already attached to provider"
        _log_error(provider, message)
        raise WarabiError(message)
    try:
        validate_config(target_type, config)
    except WarabiError as exc:
        _log_error(provider, str(exc))
        raise


def after_migration(
    provider: Provider,
    target_type: str,
    config: dict[str, Any],
    root: str,
    files: Sequence[str],
) -> Backend:
    """Recover the migrated files found under ``root`` as ``provider``'s target."""
    prefix = root if root.endswith("/") else root + "/"
    paths = [prefix + name for name in files]
    try:
        target = recover_target(target_type, provider.engine, config, paths)
    except WarabiError as exc:
        _log_error(provider, str(exc))
        raise
    provider.target = target
    return target


def _copy_files(root: str, files: Sequence[str], new_root: str, chunk: int) -> None:
    source_root, dest_root = Path(root), Path(new_root)
    pairs = [(name, source_root / name, dest_root / name) for name in files]
    for _, source, dest in pairs:
        if source.resolve() == dest.resolve():
            raise WarabiError(f"Migration destination {dest} is the same as its source")
    for name, source, dest in pairs:
        try:
            if name.endswith("/"):
                shutil.copytree(source, dest, dirs_exist_ok=True)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                with source.open("rb") as fin, dest.open("wb") as fout:
                    shutil.copyfileobj(fin, fout, chunk)
        except OSError as exc:
            raise WarabiError(f"Failed to migrate {source} to {dest}: {exc}") from exc


def migrate_target(
    provider: Provider,
    dest_address: str,
    dest_provider_id: int,
    options: str | Mapping[str, Any] | None = None,
) -> None:
    """Move ``provider``'s target to the provider at the given address and id."""
    if not provider.migration_sender:
        raise WarabiError("Provider is not able to send targets")
    source_target = provider.target
    if source_target is None:
        raise WarabiError("No target to migrate")

    opts = validate_migration_options(options)

    try:
        dest_engine = provider.engine.lookup(dest_address)
        dest = dest_engine.providers.get(dest_provider_id)
        if not isinstance(dest, Provider) or dest.identity != "warabi":
            raise WarabiError("Destination provider for migration is not a Warabi provider")
    except WarabiError as exc:
        raise WarabiError(f"Failed to lookup destination address: {exc}") from exc
    if not dest.migration_receiver:
        raise WarabiError("Destination provider is not able to receive targets")

    handle = source_target.start_migration(opts.get("remove_source", True))
    try:
        config = json.loads(source_target.get_config())
        _merge(config, opts.get("merge_config", {}))
        root = handle.root
        files = handle.files
        new_root = opts.get("new_root", root)
        before_migration(dest, source_target.name, config)
        _copy_files(root, files, new_root, opts.get("transfer_size") or _COPY_CHUNK)
        after_migration(dest, source_target.name, config, new_root, files)
    except BaseException:
        handle.cancel()
        handle.close()
        raise
    handle.close()
    provider.target = None