"""Per-VM writable root filesystems derived from a shared golden image."""

from __future__ import annotations

import errno
import fcntl
import os
import shutil
from pathlib import Path

from loguru import logger

from .errors import PrivilegeError, ProvisioningFailure
from .models import ProvisionedStorage
from .resource_checks import file_size_mb
from .util import CmdError, ensure_dir, is_permission_error, run_cmd

log = logger

# linux/fs.h: _IOW(0x94, 9, int)
FICLONE = getattr(fcntl, 'FICLONE', 0x40049409)

ROOTFS_NAME = 'rootfs.ext4'
COPY_CHUNK = 1024 * 1024

# ioctl failures meaning "no block sharing here", not "the copy is broken".
_NO_REFLINK_ERRNOS = {
    errno.EOPNOTSUPP,
    errno.ENOTTY,
    errno.EXDEV,
    errno.EINVAL,
    errno.ENOSYS,
}


def reflink_or_copy(src: Path, dst: Path) -> str:
    """
    Clone ``src`` into ``dst`` with FICLONE, or stream-copy it.

    ``dst`` is created or truncated. Returns ``'reflink'`` or ``'copy'``
    depending on the path taken; both leave ``dst`` fully independent of
    ``src``.
    """
    with open(src, 'rb') as src_fd, open(dst, 'wb') as dst_fd:
        try:
            fcntl.ioctl(dst_fd.fileno(), FICLONE, src_fd.fileno())
        except OSError as ex:
            if ex.errno not in _NO_REFLINK_ERRNOS:
                raise
            log.debug(
                'Reflink unsupported for {} -> {} ({}); copying bytes',
                src,
                dst,
                os.strerror(ex.errno),
            )
            dst_fd.seek(0)
            dst_fd.truncate()
            shutil.copyfileobj(src_fd, dst_fd, COPY_CHUNK)
            return 'copy'
    return 'reflink'


class StorageProvisioner:
    """Base for strategies laying out ``<base_dir>/<vm_id>/``."""

    method = ''

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)

    def vm_dir(self, vm_id: str) -> Path:
        return self.base_dir / vm_id

    def prepare_workdir(self, vm_id: str) -> Path:
        workdir = self.vm_dir(vm_id)
        try:
            ensure_dir(workdir)
        except OSError as ex:
            raise ProvisioningFailure(
                f'cannot create working directory {workdir}: {ex}'
            ) from ex
        return workdir

    def required_disk_mb(self, golden_image: Path) -> int:
        return 0

    def provision(
        self, vm_id: str, golden_image: Path | str
    ) -> ProvisionedStorage:
        raise NotImplementedError


class ReflinkCopyProvisioner(StorageProvisioner):
    """Give each VM its own rootfs file, sharing blocks when possible."""

    method = 'reflink'

    def required_disk_mb(self, golden_image: Path) -> int:
        # Worst case is the copy fallback.
        return file_size_mb(golden_image)

    def provision(
        self, vm_id: str, golden_image: Path | str
    ) -> ProvisionedStorage:
        golden = Path(golden_image)
        if not golden.is_file():
            raise ProvisioningFailure(f'golden image not found: {golden}')
        workdir = self.prepare_workdir(vm_id)
        dst = workdir / ROOTFS_NAME
        try:
            how = reflink_or_copy(golden, dst)
        except OSError as ex:
            dst.unlink(missing_ok=True)
            raise ProvisioningFailure(
                f'cannot clone {golden} to {dst}: {ex}'
            ) from ex
        log.bind(vm=vm_id).info('Rootfs ready via {}: {}', how, dst)
        return ProvisionedStorage(
            vm_id=vm_id, path=dst, method=how, workdir=workdir
        )


class OverlayProvisioner(StorageProvisioner):
    """
    Mount an overlay with the golden image location as the lower layer.

    When the golden image is a file, its directory is the lower layer and the
    returned path is the file as seen through the merged mount; the first
    write copies it up into this VM's upper layer only.
    """

    method = 'overlay'

    def provision(
        self, vm_id: str, golden_image: Path | str
    ) -> ProvisionedStorage:
        golden = Path(golden_image).absolute()
        if not golden.exists():
            raise ProvisioningFailure(f'golden image not found: {golden}')
        workdir = self.prepare_workdir(vm_id)
        target = workdir / 'rootfs'
        upper = workdir / 'upper'
        work = workdir / 'work'

        if os.path.ismount(target):
            log.bind(vm=vm_id).info('Unmounting stale overlay at {}', target)
            self._run(['umount', str(target)], vm_id=vm_id)
        try:
            lower = self._lower_dir(golden)
            for d in (upper, work):
                # A previous run's upper layer must not leak into this one.
                shutil.rmtree(d, ignore_errors=True)
            for d in (upper, work, target):
                ensure_dir(d)
        except OSError as ex:
            raise ProvisioningFailure(
                f'cannot prepare overlay layers for {vm_id} in {workdir}: {ex}'
            ) from ex

        opts = f'lowerdir={lower},upperdir={upper},workdir={work}'
        self._run(
            ['mount', '-t', 'overlay', 'overlay', '-o', opts, str(target)],
            vm_id=vm_id,
        )
        path = target if golden.is_dir() else target / golden.name
        log.bind(vm=vm_id).info('Overlay rootfs mounted: {}', path)
        return ProvisionedStorage(
            vm_id=vm_id, path=path, method='overlay', workdir=workdir
        )

    def _lower_dir(self, golden: Path) -> Path:
        if golden.is_dir():
            return golden
        lower = golden.parent
        if not self.base_dir.resolve().is_relative_to(lower.resolve()):
            return lower
        # Upper layers under base_dir would overlap the lower layer, so the
        # image gets its own lower directory beside the VM directories.
        stage = self.base_dir / '.golden'
        ensure_dir(stage)
        staged = stage / golden.name
        if staged.exists() and os.path.samefile(staged, golden):
            return stage
        staged.unlink(missing_ok=True)
        try:
            os.link(golden, staged)
        except FileExistsError:
            pass
        except OSError:
            reflink_or_copy(golden, staged)
        return stage

    def _run(self, cmd: list[str], *, vm_id: str) -> None:
        try:
            run_cmd(cmd, sudo=True, check=True, capture=True)
        except CmdError as ex:
            detail = ex.result.output
            if is_permission_error(detail):
                raise PrivilegeError(
                    f'{cmd[0]} requires root: {detail}'
                ) from ex
            raise ProvisioningFailure(
                f'overlay {cmd[0]} failed for {vm_id} '
                f'(is the overlay module loaded?): {detail}'
            ) from ex


def make_storage_provisioner(
    strategy: str, base_dir: Path | str
) -> StorageProvisioner:
    if strategy == 'reflink':
        return ReflinkCopyProvisioner(base_dir)
    if strategy == 'overlay':
        return OverlayProvisioner(base_dir)
    raise ValueError(f'Unknown storage strategy: {strategy!r}')
