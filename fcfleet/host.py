"""Host precondition checks: required tools and root privilege."""

from __future__ import annotations

import os

from loguru import logger

from .errors import PrivilegeError
from .util import which

log = logger

REQUIRED_CMDS = [
    'ip',
    'iptables',
    'mount',
]
OPTIONAL_CMDS = ['sysctl', 'umount']


def check_commands(
    firecracker_bin: str = 'firecracker',
) -> tuple[list[str], list[str]]:
    missing = [c for c in [*REQUIRED_CMDS, firecracker_bin] if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def require_root() -> None:
    """Fail fast unless running as root; every host mutation needs it."""
    euid = os.geteuid()
    if euid != 0:
        raise PrivilegeError(
            f'fcfleet must run as root (euid={euid}); '
            'bridge, tap, NAT and mount operations need CAP_NET_ADMIN/CAP_SYS_ADMIN.'
        )
    log.debug('Running as root')
