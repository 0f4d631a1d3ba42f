"""Fleet data model: desired VMs, provisioned resources, and live handles."""

from __future__ import annotations

import enum
import ipaddress
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


class VMState(str, enum.Enum):
    PENDING = 'pending'
    PROVISIONING = 'provisioning'
    STARTING = 'starting'
    RUNNING = 'running'
    FAILED = 'failed'


@dataclass(frozen=True)
class VMSpec:
    vm_id: str
    index: int
    guest_ip: str
    prefix_len: int
    gateway_ip: str
    mem_mb: int
    vcpus: int
    rootfs_image: Path
    kernel_image: Path
    boot_args: str

    @property
    def netmask(self) -> str:
        net = ipaddress.ip_network(
            f'{self.guest_ip}/{self.prefix_len}', strict=False
        )
        return str(net.netmask)


@dataclass(frozen=True)
class ProvisionedStorage:
    vm_id: str
    path: Path
    method: str
    workdir: Path


@dataclass(frozen=True)
class NetworkAttachment:
    vm_id: str
    tap: str
    bridge: str
    mac: str
    guest_ip: str = ''
    prefix_len: int = 24
    gateway_ip: str = ''


@dataclass
class HostNetworkState:
    """
    Process-wide handle for the shared bridge and NAT rule.

    Components receive this explicitly; ``ready`` flips once setup succeeded
    and ``lock`` serializes the check-then-create sequence.
    """

    bridge: str
    bridge_cidr: str
    nat_subnet: str
    ready: bool = False
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )


@dataclass
class VMRecord:
    """Mutable per-VM progress record kept by the controller."""

    vm_id: str
    state: VMState = VMState.PENDING
    history: list[VMState] = field(default_factory=lambda: [VMState.PENDING])

    def advance(self, state: VMState) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class RunningVM:
    spec: VMSpec
    handle: Any
    storage: ProvisionedStorage
    attachment: NetworkAttachment
    retries: int = 0
    waiter: Optional[Future] = field(default=None, repr=False)

    @property
    def endpoint(self) -> str:
        return self.spec.guest_ip
