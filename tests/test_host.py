from __future__ import annotations

import pytest

from fcfleet.errors import PrivilegeError
from fcfleet.host import check_commands, require_root


def test_check_commands_reports_missing(monkeypatch) -> None:
    present = {'ip', 'mount', 'sysctl'}
    monkeypatch.setattr(
        'fcfleet.host.which',
        lambda cmd: f'/usr/sbin/{cmd}' if cmd in present else None,
    )
    missing, missing_opt = check_commands('firecracker')
    assert missing == ['iptables', 'firecracker']
    assert missing_opt == ['umount']


def test_require_root(monkeypatch) -> None:
    monkeypatch.setattr('fcfleet.host.os.geteuid', lambda: 1000)
    with pytest.raises(PrivilegeError):
        require_root()
    monkeypatch.setattr('fcfleet.host.os.geteuid', lambda: 0)
    require_root()
