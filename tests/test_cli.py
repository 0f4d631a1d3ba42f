"""Tests for the fcfleet command line surface."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from fcfleet.cli.config import ConfigShowCLI, InitCLI
from fcfleet.cli.main import FleetModalCLI, LaunchCLI, PreflightCLI, _count_verbose, main
from fcfleet.cli.net import NetStatusCLI
from fcfleet.config import FleetConfig, load, save
from fcfleet.errors import PrivilegeError
from fcfleet.util import CmdResult


def test_config_init_writes_defaults(tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    rc = InitCLI.main(argv=False, config=str(cfg_path))
    assert rc == 0
    assert load(cfg_path) == FleetConfig()
    assert 'Wrote config' in capsys.readouterr().out


def test_config_init_refuses_overwrite_without_force(tmp_path: Path) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    cfg_path.write_text('[vm]\nmem_mb = 64\n', encoding='utf-8')
    assert InitCLI.main(argv=False, config=str(cfg_path)) == 2
    assert load(cfg_path).vm.mem_mb == 64
    assert InitCLI.main(argv=False, config=str(cfg_path), force=True) == 0
    assert load(cfg_path).vm.mem_mb == 96


def test_config_show_prints_resolved_toml(tmp_path: Path, capsys) -> None:
    cfg = FleetConfig()
    cfg.network.bridge = 'br-show'
    cfg_path = tmp_path / 'fleet.toml'
    save(cfg_path, cfg)
    assert ConfigShowCLI.main(argv=False, config=str(cfg_path)) == 0
    out = capsys.readouterr().out
    assert 'bridge = "br-show"' in out
    assert '[preflight]' in out


def test_modal_cli_dispatches_to_config_init(tmp_path: Path) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    rc = FleetModalCLI.main(
        argv=['config', 'init', '--config', str(cfg_path)], _noexit=True
    )
    rc = 0 if rc is None else int(rc)
    assert rc == 0
    assert cfg_path.exists()


def test_preflight_reports_each_vm(monkeypatch, tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    save(cfg_path, FleetConfig())
    monkeypatch.setattr('fcfleet.resource_checks.host_mem_available_mb', lambda: 200)
    monkeypatch.setattr('fcfleet.resource_checks.host_free_disk_mb', lambda p: None)
    rc = PreflightCLI.main(argv=False, config=str(cfg_path))
    out = capsys.readouterr().out
    assert rc == 1
    assert '✅ vm0 (172.16.0.10)' in out
    assert '❌ vm1 (172.16.0.11)' in out
    assert 'insufficient memory' in out


def test_preflight_count_override(monkeypatch, tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    save(cfg_path, FleetConfig())
    monkeypatch.setattr('fcfleet.resource_checks.host_mem_available_mb', lambda: None)
    monkeypatch.setattr('fcfleet.resource_checks.host_free_disk_mb', lambda p: None)
    rc = PreflightCLI.main(argv=False, config=str(cfg_path), count=5)
    out = capsys.readouterr().out
    assert rc == 0
    assert 'vm4 (172.16.0.14)' in out


def test_launch_requires_root(monkeypatch, tmp_path: Path) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    save(cfg_path, FleetConfig())
    monkeypatch.setattr('fcfleet.host.os.geteuid', lambda: 1000)
    with pytest.raises(PrivilegeError, match='must run as root'):
        LaunchCLI.main(argv=False, config=str(cfg_path))


def test_net_status_prints_nat_state(monkeypatch, tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'fleet.toml'
    save(cfg_path, FleetConfig())

    def fake_run_cmd(cmd, **kwargs):
        if cmd[0] == 'iptables':
            return CmdResult(1, '', 'iptables: Bad rule')
        return CmdResult(0, f'{" ".join(cmd)}\n', '')

    monkeypatch.setattr('fcfleet.net.run_cmd', fake_run_cmd)
    assert NetStatusCLI.main(argv=False, config=str(cfg_path)) == 0
    out = capsys.readouterr().out
    assert 'NAT 172.16.0.0/24: missing' in out
    assert 'FORWARD 172.16.0.0/24: missing' in out
    assert 'ip -o link show master fcbr0' in out


def test_main_missing_config_exits_nonzero(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(sys.modules['fcfleet.cli.main'], '_setup_logging', lambda *a: None)
    with pytest.raises(SystemExit) as info:
        main(['config', 'show', '--config', str(tmp_path / 'nope.toml')])
    assert info.value.code in (1, 2)


def test_count_verbose() -> None:
    assert _count_verbose(['launch', '-vv', '--verbose']) == 3
    assert _count_verbose(['launch', '-x']) == 0
