"""Fleet controller: run every VM through preflight, provisioning, and start."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

from loguru import logger

from .config import FleetConfig
from .errors import PROCESS_FATAL
from .models import (
    HostNetworkState,
    NetworkAttachment,
    RunningVM,
    VMRecord,
    VMSpec,
    VMState,
)
from .net import NetworkProvisioner
from .resource_checks import ResourcePreflight
from .results import FleetOutcome, VMOutcome
from .runtime import ExitInfo, FirecrackerRuntime, VMRuntime
from .storage import StorageProvisioner, make_storage_provisioner
from .vm import VMLifecycleSupervisor

log = logger


class FleetController:
    """
    Launch a fleet while tolerating per-VM failures.

    Each VM runs preflight -> storage -> network -> start strictly in order.
    A failure in any stage is recorded against that VM and the pass moves on;
    only privilege and host-network errors abort the whole run.
    """

    def __init__(
        self,
        *,
        storage: StorageProvisioner,
        network: NetworkProvisioner,
        supervisor: VMLifecycleSupervisor,
        preflight: Optional[ResourcePreflight] = None,
        workers: int = 1,
    ):
        self.storage = storage
        self.network = network
        self.supervisor = supervisor
        self.preflight = preflight
        self.workers = max(1, int(workers))

    @classmethod
    def from_config(
        cls, cfg: FleetConfig, *, runtime: Optional[VMRuntime] = None
    ) -> 'FleetController':
        cfg.validate()
        state = HostNetworkState(
            bridge=cfg.network.bridge,
            bridge_cidr=cfg.network.bridge_cidr,
            nat_subnet=cfg.network.nat_subnet,
        )
        network = NetworkProvisioner(
            state,
            tap_prefix=cfg.network.tap_prefix,
            max_taps=cfg.network.max_taps,
        )
        if runtime is None:
            runtime = FirecrackerRuntime(
                cfg.runtime.firecracker_bin,
                setup_timeout_s=cfg.runtime.setup_timeout_s,
                stop_grace_s=cfg.runtime.stop_grace_s,
                log_level=cfg.runtime.log_level,
            )
        preflight = None
        if cfg.preflight.enabled:
            preflight = ResourcePreflight(
                mem_headroom_mb=cfg.preflight.mem_headroom_mb,
                disk_headroom_mb=cfg.preflight.disk_headroom_mb,
            )
        return cls(
            storage=make_storage_provisioner(
                cfg.storage.strategy, cfg.storage.base_dir
            ),
            network=network,
            supervisor=VMLifecycleSupervisor(runtime, network),
            preflight=preflight,
            workers=cfg.fleet.workers,
        )

    def bootstrap(self) -> None:
        """Establish the shared bridge and NAT rule (idempotent)."""
        self.network.ensure_host_network()

    def launch_fleet(self, specs: Sequence[VMSpec]) -> FleetOutcome:
        self.bootstrap()
        log.info(
            'Launching fleet of {} VM(s) with {} worker(s)',
            len(specs),
            self.workers,
        )
        if self.workers == 1 or len(specs) <= 1:
            results = [self._launch_one(spec) for spec in specs]
        else:
            with ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix='fcfleet-launch'
            ) as pool:
                results = list(pool.map(self._launch_one, specs))
        outcome = FleetOutcome()
        for res in results:
            outcome.add(res)
        log.info(
            'Fleet pass done: {} running, {} failed',
            len(outcome.running()),
            len(outcome.failed()),
        )
        return outcome

    def _launch_one(self, spec: VMSpec) -> VMOutcome:
        vlog = log.bind(vm=spec.vm_id)
        record = VMRecord(vm_id=spec.vm_id)
        stage = 'preflight'
        admitted = False
        attachment: Optional[NetworkAttachment] = None
        try:
            if self.preflight is not None:
                self.preflight.admit(
                    spec,
                    self.storage.vm_dir(spec.vm_id),
                    disk_mb=self.storage.required_disk_mb(spec.rootfs_image),
                )
                admitted = True
            record.advance(VMState.PROVISIONING)
            stage = 'storage'
            storage = self.storage.provision(spec.vm_id, spec.rootfs_image)
            stage = 'network'
            attachment = self.network.provision(spec)
            stage = 'start'
            vm = self.supervisor.spawn(
                spec,
                storage,
                attachment,
                record=record,
                on_exit=self._vm_exited if admitted else None,
            )
        except PROCESS_FATAL:
            raise
        except Exception as ex:
            if record.state != VMState.FAILED:
                record.advance(VMState.FAILED)
            if attachment is not None:
                self.network.release_tap(attachment.tap)
            if admitted:
                self.preflight.release(spec)
            reason = str(ex) or type(ex).__name__
            vlog.error('{} failed: {}', stage, reason)
            return VMOutcome(
                vm_id=spec.vm_id, record=record, stage=stage, reason=reason
            )
        return VMOutcome(
            vm_id=spec.vm_id, record=record, running=vm, stage='running'
        )

    def _vm_exited(self, vm: RunningVM, info: ExitInfo) -> None:
        # Reserved memory tracks live VMs only.
        self.preflight.release(vm.spec)

    def wait_forever(self, stop: Optional[threading.Event] = None) -> None:
        """Stay resident so started VMs keep being reaped; exit on ``stop``."""
        stop = stop or threading.Event()
        log.info('Supervising running VMs; send SIGINT/SIGTERM to exit.')
        while not stop.wait(timeout=60):
            pass
