import pytest

from warabi.backend import WarabiError
from warabi.client import DEFAULT_EAGER_THRESHOLD, Client, TargetHandle
from warabi.engine import Engine
from warabi.provider import Provider

INVALID_ID = bytes([234] * 16)


def _backend_config(target_type, tmp_path):
    if target_type == "abtio":
        return {
            "path": str(tmp_path / "warabi-abtio-test-target.dat"),
            "create_if_missing": True,
            "override_if_exists": True,
        }
    return {}


def _tm_config(tm_type):
    if tm_type == "pipeline":
        return {
            "num_pools": 2,
            "num_buffers_per_pool": 8,
            "first_buffer_size": 1024,
            "buffer_size_multiplier": 2,
        }
    return {}


def _provider_config(target_type, tm_type, tmp_path):
    return {
        "target": {"type": target_type, "config": _backend_config(target_type, tmp_path)},
        "transfer_manager": {"type": tm_type, "config": _tm_config(tm_type)},
    }


@pytest.fixture
def engine():
    eng = Engine()
    yield eng
    eng.finalize()


@pytest.fixture(params=[
    ("memory", "__default__"),
    ("memory", "pipeline"),
    ("abtio", "__default__"),
    ("abtio", "pipeline"),
])
def combo(request):
    return request.param


@pytest.fixture
def handle(engine, combo, tmp_path):
    target_type, tm_type = combo
    provider = Provider(engine, 42, _provider_config(target_type, tm_type, tmp_path))
    th = Client(engine).make_target_handle(engine.address, 42)
    th.eager_read_threshold = 128
    th.eager_write_threshold = 128
    yield th
    provider.close()


def _upper(n):
    return bytes(ord("A") + i % 26 for i in range(n))


def _lower(n):
    return bytes(ord("a") + i % 26 for i in range(n))


def test_open_target(engine, combo, tmp_path):
    target_type, tm_type = combo
    Provider(engine, 42, _provider_config(target_type, tm_type, tmp_path))
    th = Client(engine).make_target_handle(engine.address, 42)
    assert bool(th)
    assert th.provider_id == 42
    assert th.address == engine.address
    assert th.eager_write_threshold == DEFAULT_EAGER_THRESHOLD
    assert th.eager_read_threshold == DEFAULT_EAGER_THRESHOLD


@pytest.mark.parametrize("data_size", [64, 196])
def test_blocking_api(handle, combo, data_size):
    target_type, _ = combo
    data = _upper(data_size)

    region_id = handle.create(data_size)
    assert len(region_id) == 16
    handle.write(region_id, 0, data)
    with pytest.raises(WarabiError):
        handle.write(INVALID_ID, 0, data)

    handle.persist(region_id, 0, data_size)
    if target_type == "abtio":
        handle.persist(INVALID_ID, 0, data_size)
    else:
        with pytest.raises(WarabiError):
            handle.persist(INVALID_ID, 0, data_size)

    assert handle.read(region_id, 0, data_size) == data
    with pytest.raises(WarabiError):
        handle.read(INVALID_ID, 0, data_size)

    data = _lower(data_size)
    region_id = handle.create_and_write(data, persist=True)
    assert handle.read(region_id, 0, data_size) == data

    handle.erase(region_id)
    with pytest.raises(WarabiError):
        handle.erase(INVALID_ID)


@pytest.mark.parametrize("data_size", [64, 196])
def test_new_region_reads_as_zeros(handle, data_size):
    region_id = handle.create(data_size)
    assert handle.read(region_id, 0, data_size) == bytes(data_size)


def test_write_at_offset(handle):
    region_id = handle.create(8)
    handle.write(region_id, 4, b"xyz")
    assert handle.read(region_id, 0, 8) == b"\0\0\0\0xyz\0"
    assert handle.read(region_id, 4, 3) == b"xyz"


def test_distinct_regions_keep_their_data(handle):
    first = handle.create_and_write(_upper(200))
    second = handle.create_and_write(_lower(50))
    assert first != second
    assert handle.read(first, 0, 200) == _upper(200)
    assert handle.read(second, 0, 50) == _lower(50)


def test_provider_without_target(engine):
    Provider(engine, 1, "{}")
    th = Client(engine).make_target_handle(engine.address, 1)
    with pytest.raises(WarabiError, match="No target found"):
        th.create_and_write(b"abcd")
    with pytest.raises(WarabiError, match="No target found"):
        th.create(4)


def test_unknown_provider_id(engine):
    th = Client(engine).make_target_handle(engine.address, 77)
    with pytest.raises(WarabiError):
        th.create(4)


def test_unknown_address(engine):
    with pytest.raises(WarabiError, match="Could not lookup"):
        Client(engine).make_target_handle("na+sm://unknown", 0)


def test_invalid_client_and_handle():
    client = Client()
    assert not client
    with pytest.raises(WarabiError, match="Invalid Client"):
        client.make_target_handle("na+sm://0", 0)
    th = TargetHandle()
    assert not th
    with pytest.raises(WarabiError, match="Invalid TargetHandle"):
        th.create(4)


def test_client_config(engine):
    client = Client(engine)
    assert bool(client)
    assert client.get_config() == "{}"