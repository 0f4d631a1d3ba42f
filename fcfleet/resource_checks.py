"""Best-effort host memory and disk headroom checks run before each VM."""

from __future__ import annotations

import math
import os
import threading
from pathlib import Path

from loguru import logger

from .errors import PreflightFailure
from .models import VMSpec
from .util import nearest_existing

log = logger


def host_mem_available_mb() -> int | None:
    try:
        text = Path('/proc/meminfo').read_text(encoding='utf-8', errors='ignore')
    except Exception:
        return None
    for line in text.splitlines():
        if line.startswith('MemAvailable:'):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) // 1024
    return None


def host_free_disk_mb(path: Path) -> int | None:
    try:
        stat = os.statvfs(str(nearest_existing(path)))
    except Exception:
        return None
    free_bytes = int(stat.f_bavail) * int(stat.f_frsize)
    return free_bytes // (1024**2)


def file_size_mb(path: Path) -> int:
    try:
        return int(math.ceil(Path(path).stat().st_size / (1024**2)))
    except OSError:
        return 0


class ResourcePreflight:
    """
    Gate each VM on live host headroom.

    A check that cannot read host state passes (fail open): the checks guard
    against obvious over-commit and are not admission control. Memory granted
    to earlier VMs in this process is reserved, because guests fault their RAM
    in lazily and ``MemAvailable`` lags behind what was promised.
    """

    def __init__(self, *, mem_headroom_mb: int = 0, disk_headroom_mb: int = 0):
        self.mem_headroom_mb = int(mem_headroom_mb)
        self.disk_headroom_mb = int(disk_headroom_mb)
        self.reserved_mb = 0
        self._lock = threading.Lock()

    def check_memory(self, required_mb: int) -> bool:
        avail = host_mem_available_mb()
        if avail is None:
            log.warning('Cannot read MemAvailable; skipping memory check.')
            return True
        budget = avail - self.reserved_mb
        ok = required_mb <= budget
        log.debug(
            'Memory check required={} MiB available={} MiB reserved={} MiB ok={}',
            required_mb,
            avail,
            self.reserved_mb,
            ok,
        )
        return ok

    def check_disk(self, path: Path, required_mb: int) -> bool:
        free = host_free_disk_mb(Path(path))
        if free is None:
            log.warning('Cannot stat free space at {}; skipping disk check.', path)
            return True
        ok = required_mb <= free
        log.debug(
            'Disk check path={} required={} MiB free={} MiB ok={}',
            path,
            required_mb,
            free,
            ok,
        )
        return ok

    def admit(self, spec: VMSpec, storage_dir: Path, *, disk_mb: int) -> None:
        """Raise :class:`PreflightFailure` unless ``spec`` fits on this host."""
        mem_needed = spec.mem_mb + self.mem_headroom_mb
        disk_needed = disk_mb + self.disk_headroom_mb
        with self._lock:
            if not self.check_memory(mem_needed):
                raise PreflightFailure(
                    f'insufficient memory: need {mem_needed} MiB '
                    f'(vm={spec.mem_mb} + headroom={self.mem_headroom_mb}), '
                    f'available={host_mem_available_mb()} MiB, '
                    f'already reserved={self.reserved_mb} MiB'
                )
            if not self.check_disk(storage_dir, disk_needed):
                raise PreflightFailure(
                    f'insufficient disk at {storage_dir}: need {disk_needed} MiB, '
                    f'free={host_free_disk_mb(storage_dir)} MiB'
                )
            self.reserved_mb += spec.mem_mb

    def release(self, spec: VMSpec) -> None:
        with self._lock:
            self.reserved_mb = max(0, self.reserved_mb - spec.mem_mb)
