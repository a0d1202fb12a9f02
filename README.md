# warabi

A storage service for *regions*. A region is a fixed-size blob of bytes
held by a *target* and served by a *provider*. Clients create regions,
then write, read, persist and erase them. Each region has a 16-byte
identifier (`bytes`) that the client keeps and passes back on every call.

## Installing

```
pip install .
```

To install the test tools as well, use `pip install .[test]`, then run `pytest`.

## Parts

- `warabi.engine.Engine` is an in-process endpoint with an address such as
  `na+sm://0`. Providers register on an engine. `Engine.call` sends a
  named RPC to a provider of the engine found at an address.
  `warabi.engine.Bulk` wraps a buffer so that it can be pulled from and
  pushed into.
- Targets are subclasses of `warabi.backend.Backend`, registered by name:
  - `memory` (`warabi.memory_backend.MemoryTarget`) keeps each region as a
    byte array in memory.
  - `abtio` (`warabi.file_backend.FileTarget`) keeps all regions as
    consecutive, aligned ranges of a single file. Its config must give
    `path`. It also accepts `create_if_missing`, `override_if_exists`,
    `alignment` (a multiple of 8, default 8) and `directio`. If the OS
    does not support direct I/O, the target falls back to normal I/O.
- Transfer managers (`warabi.transfer_manager`) move bulk data between a
  client buffer and a region:
  - `__default__` does each request as one transfer.
  - `pipeline` splits requests over pooled buffers of growing sizes and
    runs the batches in parallel threads. Its config requires
    `num_pools`, `num_buffers_per_pool`, `first_buffer_size` and
    `buffer_size_multiplier`. `split_segments` is the batching function
    it uses.
- `warabi.provider.Provider` holds one target and one transfer manager
  and answers the region RPCs. It registers itself on its engine.
- `warabi.client.Client.make_target_handle(address, provider_id)` returns
  a `TargetHandle` with these methods: `create`, `write`, `persist`,
  `create_and_write`, `read` and `erase`. Data up to
  `eager_write_threshold` / `eager_read_threshold` bytes (default 2048)
  goes along with the request in a `BufferWrapper`. Larger data is
  exposed as a `Bulk` for the provider's transfer manager.
- `warabi.migration.migrate_target` moves a file target from one provider
  to another.
- `warabi.async_request.AsyncRequest` wraps a `concurrent.futures.Future`.
  `wait()` returns the result, passed through an optional completion
  callback, and raises the operation's error. `completed()` checks
  without blocking.

## Example

```python
from warabi.client import Client
from warabi.engine import Engine
from warabi.provider import Provider

with Engine() as engine:
    provider = Provider(engine, 42, {"target": {"type": "memory"}})
    handle = Client(engine).make_target_handle(engine.address, 42)

    region_id = handle.create(5)
    handle.write(region_id, 0, b"hello")
    assert handle.read(region_id, 0, 5) == b"hello"

    other_id = handle.create_and_write(b"world", persist=True)
    handle.erase(other_id)
    provider.close()
```

## Provider configuration

The config may be given as JSON text or as a mapping:

```json
{
    "target": {
        "type": "abtio",
        "config": {"path": "/tmp/data.dat", "create_if_missing": true}
    },
    "transfer_manager": {
        "type": "pipeline",
        "config": {
            "num_pools": 2,
            "num_buffers_per_pool": 8,
            "first_buffer_size": 1024,
            "buffer_size_multiplier": 2
        }
    }
}
```

With no `transfer_manager`, the provider uses `__default__`. With no
`target`, it starts empty and every region request fails until a target
is set or migrated in. The provider config and each part's config are
checked against a JSON schema. `Provider.get_config()` returns the
config in effect as JSON.

`Provider.close()` deregisters the provider and destroys its target. For
a file target, this deletes the file.

## Migration

The source provider must be built with `migration_sender=True`. The
destination provider must be built with `migration_receiver=True` and
must have no target yet.

```python
from warabi.migration import migrate_target

migrate_target(source_provider, engine.address, 2,
               {"new_root": "/tmp/migrated", "remove_source": True})
```

The options are:

| Option | Meaning |
| --- | --- |
| `new_root` | Directory the files are copied into. |
| `transfer_size` | Copy chunk size. |
| `merge_config` | Merged into the target's config before the target is reopened on the destination. |
| `remove_source` | Delete the source file afterwards. Default: `true`. |

The source provider is left without a target. Memory targets cannot be
migrated.

## Errors

Every failed operation raises `warabi.backend.WarabiError`. This covers
invalid configs, unknown target or transfer manager types, invalid
region IDs, out-of-range segments and unknown addresses. Errors raised by
the provider reach the `TargetHandle` caller unchanged.

## Limits

Engines only reach other engines in the same Python process. There is no
network transport and no command-line server or client. Migration copies
files on the local file system.