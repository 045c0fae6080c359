"""
Unit tests for declaration decoding and the configuration snapshot.
"""

import json

import pytest

from conftest import container_decl
from phoenix_orchestrator.core.config_store import ConfigStore, processing_order
from phoenix_orchestrator.core.errors import ConfigurationError, EnvironmentalError
from phoenix_orchestrator.core.models import NetworkConfig, parse_gpu_indices


@pytest.fixture
def store(settings, logger):
    return ConfigStore(settings, logger)


def test_defaults_applied(store, settings):
    spec = store.decode(901, container_decl("worker", 101))

    assert spec.id == 901
    assert spec.cores == 2
    assert spec.memory_mb == 2048
    assert spec.storage.pool == "lxc-disks"
    assert spec.storage.size_gb == 32
    assert spec.features == "nesting=1"
    assert spec.template == settings.default_template
    assert spec.gpu_assignment == ()


def test_original_field_names(store):
    spec = store.decode(901, {
        "name": "worker",
        "memory": 8192,
        "cores": 8,
        "storage_pool": "fast",
        "storage_size_gb": 128,
        "network_config": "10.0.0.101/24,10.0.0.1,1.1.1.1",
        "mac_address": "52:54:00:12:34:56",
        "gpu_assignment": "0,1",
        "template": "local:vztmpl/custom.tar.zst",
    })

    assert spec.memory_mb == 8192
    assert spec.storage.pool == "fast"
    assert spec.storage.size_gb == 128
    assert spec.network.nameserver == "1.1.1.1"
    assert spec.network.mac_address == "52:54:00:12:34:56"
    assert spec.gpu_assignment == (0, 1)
    assert spec.network.to_net0() == (
        "name=eth0,bridge=vmbr0,ip=10.0.0.101/24,gw=10.0.0.1,hwaddr=52:54:00:12:34:56"
    )


@pytest.mark.parametrize("decl, fragment", [
    (container_decl("w", 101, gpus="zero"), "gpu_assignment"),
    ({"name": "w", "network_config": "10.0.0.5,10.0.0.1"}, "ip"),
    ({"name": "w", "network_config": "10.0.0.5/24,not-an-ip"}, "gateway"),
    ({"name": "w", "network_config": "10.0.0.5/24"}, "Expected format"),
    (container_decl("w", 101, mac_address="01:00:5e:00:00:01"), "unicast"),
    (container_decl("w", 101, cores=0), "cores"),
    ({"network_config": "10.0.0.5/24,10.0.0.1"}, "name"),
])
def test_invalid_declarations(store, decl, fragment):
    with pytest.raises(ConfigurationError) as exc:
        store.decode(901, decl)
    assert fragment in str(exc.value)
    assert exc.value.container_id == 901


def test_snapshot_keeps_errors_per_container(store):
    snapshot = store.parse({"lxc_configs": {
        "901": container_decl("ok", 101),
        "902": container_decl("bad", 102, gpus="x"),
        "abc": container_decl("ignored", 103),
    }})

    assert list(snapshot.specs) == [901]
    assert list(snapshot.errors) == [902]
    assert snapshot.container_ids() == [901, 902]
    with pytest.raises(ConfigurationError):
        snapshot.get(902)
    with pytest.raises(ConfigurationError):
        snapshot.get(777)


def test_host_section(store):
    snapshot = store.parse({"lxc_configs": {}, "host": {"setup_commands": ["apt-get update"]}})
    assert snapshot.host.setup_commands == ("apt-get update",)

    with pytest.raises(ConfigurationError):
        store.parse({"lxc_configs": {}, "host": {"setup_commands": "apt-get update"}})


def test_load_from_file(store, settings):
    settings.config_file.write_text(json.dumps({"lxc_configs": {"901": container_decl("w", 101, gpus="0")}}))

    snapshot = store.load()

    assert snapshot.get(901).gpu_assignment == (0,)
    assert snapshot.wants_accelerators


def test_load_errors(store, settings, tmp_path):
    with pytest.raises(EnvironmentalError):
        store.load(tmp_path / "missing.json")

    settings.config_file.write_text("{not json")
    with pytest.raises(ConfigurationError):
        store.load()

    settings.config_file.write_text(json.dumps({"containers": {}}))
    with pytest.raises(ConfigurationError):
        store.load()


def test_processing_order():
    assert processing_order([120, 999, 101, 990, 1000]) == [990, 999, 101, 120, 1000]


@pytest.mark.parametrize("value, expected", [
    ("0,1", (0, 1)),
    ("1 0 1", (1, 0)),
    ([2, "3"], (2, 3)),
    ("none", ()),
    ("", ()),
    (None, ()),
    (4, (4,)),
])
def test_parse_gpu_indices(value, expected):
    assert parse_gpu_indices(value) == expected


def test_dhcp_network_has_no_address():
    network = NetworkConfig(ip="dhcp", gateway="10.0.0.1")
    assert network.address is None
    assert NetworkConfig.model_validate("10.0.0.9/24,10.0.0.1").address == "10.0.0.9"
