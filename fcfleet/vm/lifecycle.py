"""VM lifecycle: machine config assembly, create/start with busy-tap retry, reaping."""

from __future__ import annotations

import dataclasses
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from ..errors import DeviceBusyError, StartFailure
from ..models import (
    NetworkAttachment,
    ProvisionedStorage,
    RunningVM,
    VMRecord,
    VMSpec,
    VMState,
)
from ..net import NetworkProvisioner
from ..runtime import ExitInfo, MachineConfig, NetworkInterface, VMRuntime

log = logger

# Busy-tap recovery is attempted once; a second busy start is terminal.
MAX_START_ATTEMPTS = 2


def _paths(workdir: Path) -> dict[str, Path]:
    return {
        'socket': workdir / 'fc.sock',
        'log': workdir / 'fc.log',
        'metrics': workdir / 'fc.metrics',
        'console': workdir / 'console.log',
    }


def guest_ip_boot_arg(attachment: NetworkAttachment, netmask: str) -> str:
    """Kernel ``ip=`` parameter for a static guest address on ``eth0``."""
    return (
        f'ip={attachment.guest_ip}::{attachment.gateway_ip}:{netmask}'
        f'::eth0:off'
    )


def build_machine_config(
    spec: VMSpec,
    storage: ProvisionedStorage,
    attachment: NetworkAttachment,
) -> MachineConfig:
    p = _paths(storage.workdir)
    boot_args = spec.boot_args
    if attachment.guest_ip and ' ip=' not in f' {boot_args}':
        boot_args = f'{boot_args} {guest_ip_boot_arg(attachment, spec.netmask)}'
    return MachineConfig(
        vm_id=spec.vm_id,
        socket_path=p['socket'],
        log_path=p['log'],
        metrics_path=p['metrics'],
        console_path=p['console'],
        kernel_image=spec.kernel_image,
        boot_args=boot_args.strip(),
        rootfs_path=storage.path,
        mem_mb=spec.mem_mb,
        vcpus=spec.vcpus,
        network=NetworkInterface(
            host_dev_name=attachment.tap, guest_mac=attachment.mac
        ),
    )


def detach(fn: Callable, *args, name: str = 'fcfleet-detached') -> Future:
    """
    Run ``fn(*args)`` on a daemon thread and return its :class:`Future`.

    Nothing joins the thread, so a VM that never exits cannot hold the
    interpreter open at shutdown.
    """
    fut: Future = Future()

    def _runner() -> None:
        if not fut.set_running_or_notify_cancel():
            return
        try:
            fut.set_result(fn(*args))
        except BaseException as ex:
            fut.set_exception(ex)

    threading.Thread(target=_runner, name=name, daemon=True).start()
    return fut


class VMLifecycleSupervisor:
    """
    Create and start machines, then reap them in the background.

    Exit waits run on detached daemon threads and are never joined by
    :meth:`spawn`.
    """

    def __init__(
        self,
        runtime: VMRuntime,
        network: NetworkProvisioner,
        *,
        on_exit: Optional[Callable[[RunningVM, ExitInfo], None]] = None,
    ):
        self.runtime = runtime
        self.network = network
        self.on_exit = on_exit

    def spawn(
        self,
        spec: VMSpec,
        storage: ProvisionedStorage,
        attachment: NetworkAttachment,
        *,
        record: Optional[VMRecord] = None,
        on_exit: Optional[Callable[[RunningVM, ExitInfo], None]] = None,
    ) -> RunningVM:
        """
        Create and start one machine, retrying once on a busy tap.

        ``on_exit`` runs after this machine exits, in addition to the
        supervisor-wide hook.
        """
        vlog = log.bind(vm=spec.vm_id)
        record = record or VMRecord(vm_id=spec.vm_id)
        config = build_machine_config(spec, storage, attachment)

        record.advance(VMState.STARTING)
        try:
            handle = self.runtime.create(config)
        except StartFailure:
            record.advance(VMState.FAILED)
            raise
        vlog.debug('Machine created (socket={})', config.socket_path)

        retries = 0
        attempt = 1
        while True:
            try:
                self.runtime.start(handle)
                break
            except DeviceBusyError as ex:
                if attempt >= MAX_START_ATTEMPTS:
                    self._abandon(handle, attachment, record, vlog)
                    raise
                vlog.warning(
                    'Tap {} busy at start ({}); retrying with a new device',
                    attachment.tap,
                    ex,
                )
                try:
                    attachment = self.network.reallocate(spec, attachment)
                except Exception:
                    self._abandon(handle, attachment, record, vlog)
                    raise
                handle.config = dataclasses.replace(
                    handle.config,
                    network=NetworkInterface(
                        host_dev_name=attachment.tap, guest_mac=attachment.mac
                    ),
                )
                retries += 1
                attempt += 1
                record.advance(VMState.STARTING)
            except StartFailure:
                self._abandon(handle, attachment, record, vlog)
                raise

        record.advance(VMState.RUNNING)
        vm = RunningVM(
            spec=spec,
            handle=handle,
            storage=storage,
            attachment=attachment,
            retries=retries,
        )
        vm.waiter = detach(
            self._reap, vm, on_exit, name=f'fcfleet-reap-{spec.vm_id}'
        )
        vlog.info('up -> ssh root@{} (tap={})', spec.guest_ip, attachment.tap)
        return vm

    def _abandon(
        self, handle, attachment: NetworkAttachment, record: VMRecord, vlog
    ) -> None:
        record.advance(VMState.FAILED)
        self.network.release_tap(attachment.tap)
        try:
            self.runtime.stop(handle)
        except Exception as ex:
            vlog.warning('Failed to stop machine after start failure: {}', ex)

    def _reap(
        self,
        vm: RunningVM,
        on_exit: Optional[Callable[[RunningVM, ExitInfo], None]] = None,
    ) -> ExitInfo:
        vlog = log.bind(vm=vm.spec.vm_id)
        try:
            info = self.runtime.wait(vm.handle)
            vlog.info('Machine exited (code={})', info.code)
            for hook in (on_exit, self.on_exit):
                if hook is not None:
                    hook(vm, info)
        except Exception:
            vlog.exception('Reaping machine failed')
            raise
        finally:
            self.network.release_tap(vm.attachment.tap)
        return info
