from __future__ import annotations

from pathlib import Path

import pytest

from fcfleet.config import FleetConfig, dump_toml, load, save


def test_save_load_roundtrip(tmp_path: Path) -> None:
    cfg = FleetConfig()
    cfg.vm.guest_ips = ['10.9.0.5', '10.9.0.6']
    cfg.vm.mem_mb = 128
    cfg.network.bridge = 'br-test'
    cfg.storage.strategy = 'overlay'
    cfg.preflight.enabled = False
    cfg.runtime.stop_grace_s = 2.5
    cfg.verbosity = 2
    path = tmp_path / 'config.toml'
    save(path, cfg)
    got = load(path)
    assert got == cfg


def test_dump_toml_sections() -> None:
    text = dump_toml(FleetConfig())
    for section in ('[vm]', '[network]', '[storage]', '[runtime]', '[preflight]', '[fleet]'):
        assert section in text
    assert 'strategy = "reflink"' in text
    assert 'enabled = true' in text
    # Default verbosity is implied.
    assert 'verbosity' not in text


def test_load_ignores_unknown_keys(tmp_path: Path) -> None:
    path = tmp_path / 'config.toml'
    path.write_text(
        '[network]\nbridge = "brx"\nbridge_cidr = "1.2.3.4/8"\nbogus = 1\n'
        '[unknown]\nx = 1\n',
        encoding='utf-8',
    )
    cfg = load(path)
    assert cfg.network.bridge == 'brx'
    assert cfg.network.bridge_cidr == '172.16.0.1/24'


def test_guest_ips_explicit_list() -> None:
    cfg = FleetConfig()
    assert cfg.guest_ips() == ['172.16.0.10', '172.16.0.11', '172.16.0.12']


def test_guest_ips_count_extends_sequentially() -> None:
    cfg = FleetConfig()
    cfg.vm.count = 5
    assert cfg.guest_ips()[3:] == ['172.16.0.13', '172.16.0.14']


def test_guest_ips_count_truncates() -> None:
    cfg = FleetConfig()
    cfg.vm.count = 1
    assert cfg.guest_ips() == ['172.16.0.10']


def test_guest_ips_count_without_list_starts_above_gateway() -> None:
    cfg = FleetConfig()
    cfg.vm.guest_ips = []
    cfg.vm.count = 2
    assert cfg.guest_ips() == ['172.16.0.10', '172.16.0.11']


def test_vm_specs_ids_and_fields() -> None:
    cfg = FleetConfig()
    specs = cfg.vm_specs()
    assert [s.vm_id for s in specs] == ['vm0', 'vm1', 'vm2']
    assert [s.index for s in specs] == [0, 1, 2]
    assert specs[1].guest_ip == '172.16.0.11'
    assert specs[0].gateway_ip == '172.16.0.1'
    assert specs[0].netmask == '255.255.255.0'
    assert specs[0].rootfs_image == Path('alpine-rootfs.ext4')


@pytest.mark.parametrize(
    'section,key,value',
    [
        ('storage', 'strategy', 'zfs'),
        ('network', 'bridge', 'a-bridge-name-too-long'),
        ('fleet', 'workers', 0),
        ('network', 'nat_subnet', 'not-a-subnet'),
    ],
)
def test_validate_rejects(section, key, value) -> None:
    cfg = FleetConfig()
    setattr(getattr(cfg, section), key, value)
    with pytest.raises(ValueError):
        cfg.validate()


def test_expanded_paths(monkeypatch) -> None:
    monkeypatch.setenv('FC_IMAGES', '/srv/images')
    cfg = FleetConfig()
    cfg.vm.rootfs_image = '$FC_IMAGES/rootfs.ext4'
    cfg.expanded_paths()
    assert cfg.vm.rootfs_image == '/srv/images/rootfs.ext4'
