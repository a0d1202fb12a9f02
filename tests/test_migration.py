import json

import pytest

from warabi.backend import WarabiError
from warabi.client import Client
from warabi.engine import Engine
from warabi.migration import (
    after_migration,
    before_migration,
    migrate_target,
    validate_migration_options,
)
from warabi.provider import Provider

DATA_SIZE = 196


def _pattern(i):
    return bytes(ord("A") + i + j % 26 for j in range(DATA_SIZE))


def _file_config(path):
    return {
        "target": {
            "type": "abtio",
            "config": {
                "path": str(path),
                "create_if_missing": True,
                "override_if_exists": True,
            },
        },
        "transfer_manager": {"type": "__default__", "config": {}},
    }


@pytest.fixture
def engine():
    eng = Engine()
    yield eng
    eng.finalize()


@pytest.fixture
def source_path(tmp_path):
    return tmp_path / "src" / "target.dat"


@pytest.fixture
def providers(engine, source_path):
    source = Provider(engine, 1, _file_config(source_path), migration_sender=True)
    dest = Provider(engine, 2, "{}", migration_receiver=True)
    yield source, dest
    dest.close()
    source.close()


def _fill(engine, provider_id):
    th = Client(engine).make_target_handle(engine.address, provider_id)
    return th, [th.create_and_write(_pattern(i), persist=True) for i in range(16)]


def test_fill_migrate_and_read(engine, providers, source_path, tmp_path):
    source, _ = providers
    client = Client(engine)
    th2 = client.make_target_handle(engine.address, 2)
    with pytest.raises(WarabiError):
        th2.create_and_write(b"abcd")

    th1, region_ids = _fill(engine, 1)
    new_root = tmp_path / "migrated"
    options = json.dumps({
        "new_root": str(new_root),
        "transfer_size": 1024,
        "merge_config": {},
        "remove_source": True,
    })
    migrate_target(source, engine.address, 2, options)

    for i, region_id in enumerate(region_ids):
        assert th2.read(region_id, 0, DATA_SIZE) == _pattern(i)
    with pytest.raises(WarabiError):
        th1.create_and_write(b"abcd")
    assert source.target is None
    assert not source_path.exists()
    assert (new_root / "target.dat").exists()


def test_destination_config_points_to_new_root(engine, providers, tmp_path):
    source, dest = providers
    new_root = tmp_path / "elsewhere"
    migrate_target(source, engine.address, 2,
                   {"new_root": str(new_root), "merge_config": {"alignment": 16}})
    config = json.loads(dest.get_config())
    assert config["target"]["type"] == "abtio"
    assert config["target"]["config"]["path"] == f"{new_root}/target.dat"
    assert config["target"]["config"]["alignment"] == 16


def test_keep_source(engine, providers, source_path, tmp_path):
    source, _ = providers
    _, region_ids = _fill(engine, 1)
    migrate_target(source, engine.address, 2,
                   {"new_root": str(tmp_path / "copy"), "remove_source": False})
    assert source_path.exists()
    assert source.target is None
    th2 = Client(engine).make_target_handle(engine.address, 2)
    assert th2.read(region_ids[3], 0, DATA_SIZE) == _pattern(3)


def test_destination_with_target_is_refused(engine, providers, source_path, tmp_path):
    source, _ = providers
    Provider(engine, 3, {"target": {"type": "memory"}}, migration_receiver=True)
    th1, region_ids = _fill(engine, 1)
    with pytest.raises(WarabiError, match="target already attached"):
        migrate_target(source, engine.address, 3, {"new_root": str(tmp_path / "m")})
    assert source.target is not None
    assert source_path.exists()
    assert th1.read(region_ids[0], 0, DATA_SIZE) == _pattern(0)
    new_id = th1.create_and_write(b"abcd")
    assert th1.read(new_id, 0, 4) == b"abcd"


def test_same_root_is_refused(engine, providers, source_path):
    source, _ = providers
    th1, region_ids = _fill(engine, 1)
    with pytest.raises(WarabiError, match="same as its source"):
        migrate_target(source, engine.address, 2, {"new_root": str(source_path.parent)})
    assert source_path.exists()
    assert th1.read(region_ids[5], 0, DATA_SIZE) == _pattern(5)


def test_destination_must_be_receiver(engine, providers, tmp_path):
    source, _ = providers
    Provider(engine, 4, "{}")
    with pytest.raises(WarabiError, match="not able to receive"):
        migrate_target(source, engine.address, 4, {"new_root": str(tmp_path / "m")})
    assert source.target is not None


def test_unknown_destination_provider(engine, providers):
    source, _ = providers
    with pytest.raises(WarabiError, match="Failed to lookup destination address"):
        migrate_target(source, engine.address, 99, {})


def test_unknown_destination_address(providers):
    source, _ = providers
    with pytest.raises(WarabiError, match="Failed to lookup destination address"):
        migrate_target(source, "na+sm://nowhere", 2, {})


def test_source_must_be_sender(engine, tmp_path):
    source = Provider(engine, 5, _file_config(tmp_path / "t.dat"))
    Provider(engine, 6, "{}", migration_receiver=True)
    with pytest.raises(WarabiError, match="not able to send"):
        migrate_target(source, engine.address, 6, {})
    assert source.target is not None


def test_source_without_target(engine):
    source = Provider(engine, 7, "{}", migration_sender=True)
    with pytest.raises(WarabiError, match="No target to migrate"):
        migrate_target(source, engine.address, 7, {})


def test_memory_target_cannot_migrate(engine):
    source = Provider(engine, 8, {"target": {"type": "memory"}}, migration_sender=True)
    Provider(engine, 9, "{}", migration_receiver=True)
    with pytest.raises(WarabiError):
        migrate_target(source, engine.address, 9, {})
    assert source.target is not None


def test_validate_migration_options_parses_json():
    options = validate_migration_options('{"transfer_size": 1024, "remove_source": false}')
    assert options == {"transfer_size": 1024, "remove_source": False}
    assert validate_migration_options("") == {}
    assert validate_migration_options(None) == {}


@pytest.mark.parametrize("options", [
    '{"transfer_size": -1}',
    '{"remove_source": "yes"}',
    '{"merge_config": 3}',
    "[1, 2]",
    "{not json",
])
def test_validate_migration_options_rejects(options):
    with pytest.raises(WarabiError, match="Invalid JSON migration options"):
        validate_migration_options(options)


def test_before_migration_refuses_provider_with_target(engine):
    provider = Provider(engine, 10, {"target": {"type": "memory"}})
    with pytest.raises(WarabiError, match="target already attached"):
        before_migration(provider, "memory", {})


def test_before_migration_validates_config(engine):
    provider = Provider(engine, 11, "{}")
    with pytest.raises(WarabiError):
        before_migration(provider, "abtio", {})
    with pytest.raises(WarabiError, match="Unknown target type"):
        before_migration(provider, "nosuchtype", {})


@pytest.mark.parametrize("trailing", ["", "/"])
def test_after_migration_recovers_target(engine, tmp_path, trailing):
    root = tmp_path / "root"
    root.mkdir()
    (root / "data.dat").write_bytes(b"hello world!")
    provider = Provider(engine, 12, "{}")
    target = after_migration(provider, "abtio", {"path": "ignored"}, str(root) + trailing, ["data.dat"])
    assert provider.target is target
    assert target.filename == f"{root}/data.dat"
    assert json.loads(target.get_config())["path"] == f"{root}/data.dat"


def test_after_migration_missing_file(engine, tmp_path):
    provider = Provider(engine, 13, "{}")
    with pytest.raises(WarabiError, match="not found"):
        after_migration(provider, "abtio", {}, str(tmp_path), ["missing.dat"])
    assert provider.target is None