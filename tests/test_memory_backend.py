import json
import struct

import pytest

from warabi.backend import WarabiError, create_target
from warabi.engine import Bulk, Engine
from warabi.memory_backend import MemoryTarget

INVALID_ID = bytes([234]) * 16


def _pattern(size, first):
    return bytes(ord(first) + (i % 26) for i in range(size))


@pytest.fixture
def engine():
    eng = Engine()
    yield eng
    eng.finalize()


@pytest.fixture
def target(engine):
    return MemoryTarget(engine, {})


@pytest.mark.parametrize("data_size", [64, 196])
def test_target_blocking_scenario(target, data_size):
    data = _pattern(data_size, "A")

    with target.create(data_size) as region:
        region_id = region.region_id

    with target.write(region_id) as region:
        region.write([(0, data_size)], data)

    with pytest.raises(WarabiError):
        target.write(INVALID_ID)

    with target.write(region_id, True) as region:
        region.persist([(0, data_size)])

    with pytest.raises(WarabiError):
        target.write(INVALID_ID, True)

    with target.read(region_id) as region:
        assert region.read([(0, data_size)]) == data

    with pytest.raises(WarabiError):
        target.read(INVALID_ID)

    second = _pattern(data_size, "a")
    with target.create(data_size) as region:
        region.write([(0, data_size)], second, True)
        second_id = region.region_id

    with target.read(second_id) as region:
        assert region.read([(0, data_size)]) == second

    target.erase(second_id)
    with pytest.raises(WarabiError):
        target.erase(INVALID_ID)


@pytest.mark.parametrize("data_size", [64, 196])
def test_bulk_path(target, data_size):
    data = _pattern(data_size, "A")
    with target.create(data_size) as region:
        region.write_bulk([(0, data_size)], Bulk(bytearray(data)), 0)
        region_id = region.region_id
    out = Bulk(bytearray(data_size))
    with target.read(region_id) as region:
        region.read_bulk([(0, data_size)], out, 0)
    assert out.pull(0, data_size) == data


def test_region_id_encodes_index_and_size(target):
    with target.create(64) as region:
        first = region.region_id
    with target.create(32) as region:
        second = region.region_id
    assert struct.unpack("<QQ", first) == (0, 64)
    assert struct.unpack("<QQ", second) == (1, 32)


def test_segments_scatter_and_gather(target):
    with target.create(16) as region:
        region.write([(0, 4), (8, 0), (10, 4)], b"abcdefgh")
        assert region.read([(10, 4), (0, 4)]) == b"efghabcd"
        assert region.read([(4, 0)]) == b""


def test_out_of_bounds_segment_rejected(target):
    with target.create(8) as region:
        with pytest.raises(WarabiError):
            region.write([(6, 4)], b"abcd")
        with pytest.raises(WarabiError):
            region.read([(0, 9)])


def test_erased_region_is_empty(target):
    with target.create(8) as region:
        region.write([(0, 8)], b"12345678")
        region_id = region.region_id
    target.erase(region_id)
    with target.read(region_id) as region:
        with pytest.raises(WarabiError):
            region.read([(0, 1)])


def test_destroy_drops_regions(target):
    with target.create(4) as region:
        region_id = region.region_id
    target.destroy()
    with pytest.raises(WarabiError):
        target.read(region_id)


def test_config_round_trip(engine):
    target = MemoryTarget(engine, {"a": 1})
    assert json.loads(target.get_config()) == {"a": 1}


def test_registered_as_memory(engine):
    target = create_target("memory", engine, {})
    assert isinstance(target, MemoryTarget)
    assert target.name == "memory"
    assert json.loads(target.get_config()) == {}


def test_migration_and_recovery_unsupported(engine, target):
    with pytest.raises(WarabiError):
        target.start_migration(True)
    with pytest.raises(WarabiError):
        MemoryTarget.recover(engine, {}, ["/tmp/x"])


def test_negative_size_rejected(target):
    with pytest.raises(WarabiError):
        target.create(-1)
    with target.create(2) as region:
        assert region.read([(0, 2)]) == b"\x00\x00"