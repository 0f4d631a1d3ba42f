"""Tests for per-VM memory and disk headroom checks."""

from __future__ import annotations

from pathlib import Path

import pytest

from fcfleet.config import FleetConfig
from fcfleet.errors import PreflightFailure
from fcfleet.resource_checks import (
    ResourcePreflight,
    file_size_mb,
    host_free_disk_mb,
    host_mem_available_mb,
)


def _spec(mem_mb: int = 96):
    cfg = FleetConfig()
    cfg.vm.mem_mb = mem_mb
    return cfg.vm_specs()[0]


def test_fail_open_when_host_state_unreadable(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr('fcfleet.resource_checks.host_mem_available_mb', lambda: None)
    monkeypatch.setattr('fcfleet.resource_checks.host_free_disk_mb', lambda p: None)
    pf = ResourcePreflight(mem_headroom_mb=10_000, disk_headroom_mb=10_000)
    pf.admit(_spec(), tmp_path, disk_mb=10_000)
    assert pf.reserved_mb == 96


def test_low_memory_rejects(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr('fcfleet.resource_checks.host_mem_available_mb', lambda: 100)
    monkeypatch.setattr('fcfleet.resource_checks.host_free_disk_mb', lambda p: 1_000_000)
    pf = ResourcePreflight(mem_headroom_mb=32)
    with pytest.raises(PreflightFailure, match='insufficient memory'):
        pf.admit(_spec(96), tmp_path, disk_mb=0)
    assert pf.reserved_mb == 0


def test_low_disk_rejects(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr('fcfleet.resource_checks.host_mem_available_mb', lambda: 8192)
    monkeypatch.setattr('fcfleet.resource_checks.host_free_disk_mb', lambda p: 50)
    pf = ResourcePreflight(disk_headroom_mb=64)
    with pytest.raises(PreflightFailure, match='insufficient disk'):
        pf.admit(_spec(), tmp_path, disk_mb=1)


def test_reservations_accumulate_and_release(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr('fcfleet.resource_checks.host_mem_available_mb', lambda: 250)
    monkeypatch.setattr('fcfleet.resource_checks.host_free_disk_mb', lambda p: None)
    pf = ResourcePreflight()
    spec = _spec(100)
    pf.admit(spec, tmp_path, disk_mb=0)
    pf.admit(spec, tmp_path, disk_mb=0)
    # MemAvailable did not move but 200 MiB is already promised.
    with pytest.raises(PreflightFailure):
        pf.admit(spec, tmp_path, disk_mb=0)
    pf.release(spec)
    pf.admit(spec, tmp_path, disk_mb=0)
    assert pf.reserved_mb == 200


def test_host_readers_on_this_machine(tmp_path: Path) -> None:
    mem = host_mem_available_mb()
    assert mem is None or mem >= 0
    free = host_free_disk_mb(tmp_path / 'not' / 'yet')
    assert free is None or free >= 0


def test_file_size_mb_rounds_up(tmp_path: Path) -> None:
    img = tmp_path / 'img'
    img.write_bytes(b'x' * (1024 * 1024 + 1))
    assert file_size_mb(img) == 2
    assert file_size_mb(tmp_path / 'missing') == 0
