"""Dataclass config sections for the fleet and their TOML persistence."""

from __future__ import annotations

import ipaddress
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .models import VMSpec
from .util import expand

DEFAULT_BOOT_ARGS = 'console=ttyS0 reboot=k panic=1 pci=off root=/dev/vda rw quiet'
STORAGE_STRATEGIES = ('reflink', 'overlay')


@dataclass
class VMConfig:
    name_prefix: str = 'vm'
    guest_ips: list[str] = field(
        default_factory=lambda: ['172.16.0.10', '172.16.0.11', '172.16.0.12']
    )
    count: int = 0
    mem_mb: int = 96
    vcpus: int = 1
    kernel_image: str = 'hello-vmlinux.bin'
    rootfs_image: str = 'alpine-rootfs.ext4'
    boot_args: str = DEFAULT_BOOT_ARGS
    ssh_user: str = 'root'


@dataclass
class NetworkConfig:
    bridge: str = 'fcbr0'
    gateway_ip: str = '172.16.0.1'
    prefix_len: int = 24
    nat_subnet: str = '172.16.0.0/24'
    tap_prefix: str = 'tap'
    max_taps: int = 256

    @property
    def bridge_cidr(self) -> str:
        return f'{self.gateway_ip}/{self.prefix_len}'


@dataclass
class StorageConfig:
    strategy: str = 'reflink'
    base_dir: str = 'machine'


@dataclass
class RuntimeConfig:
    firecracker_bin: str = 'firecracker'
    setup_timeout_s: float = 5.0
    stop_grace_s: float = 5.0
    log_level: str = 'Info'


@dataclass
class PreflightConfig:
    enabled: bool = True
    mem_headroom_mb: int = 32
    disk_headroom_mb: int = 64


@dataclass
class FleetSection:
    workers: int = 1


@dataclass
class FleetConfig:
    vm: VMConfig = field(default_factory=VMConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    preflight: PreflightConfig = field(default_factory=PreflightConfig)
    fleet: FleetSection = field(default_factory=FleetSection)
    verbosity: int = 1

    def expanded_paths(self) -> 'FleetConfig':
        self.vm.kernel_image = expand(self.vm.kernel_image)
        self.vm.rootfs_image = expand(self.vm.rootfs_image)
        self.storage.base_dir = expand(self.storage.base_dir)
        return self

    def validate(self) -> None:
        if self.storage.strategy not in STORAGE_STRATEGIES:
            raise ValueError(
                f'storage.strategy must be one of {STORAGE_STRATEGIES}, '
                f'got {self.storage.strategy!r}'
            )
        if len(self.network.bridge) > 15:
            raise ValueError(
                f'Bridge name too long ({len(self.network.bridge)} > 15): '
                f'{self.network.bridge}'
            )
        if self.fleet.workers < 1:
            raise ValueError('fleet.workers must be >= 1')
        ipaddress.ip_network(self.network.nat_subnet, strict=False)

    def guest_ips(self) -> list[str]:
        ips = [str(ip).strip() for ip in self.vm.guest_ips if str(ip).strip()]
        want = self.vm.count or len(ips)
        if want > len(ips):
            if not ips:
                # Start just above the gateway when no explicit IPs exist.
                nxt = ipaddress.ip_address(self.network.gateway_ip) + 9
            else:
                nxt = ipaddress.ip_address(ips[-1]) + 1
            while len(ips) < want:
                ips.append(str(nxt))
                nxt += 1
        return ips[:want]

    def vm_specs(self) -> list[VMSpec]:
        specs = []
        for idx, ip in enumerate(self.guest_ips()):
            specs.append(
                VMSpec(
                    vm_id=f'{self.vm.name_prefix}{idx}',
                    index=idx,
                    guest_ip=ip,
                    prefix_len=self.network.prefix_len,
                    gateway_ip=self.network.gateway_ip,
                    mem_mb=self.vm.mem_mb,
                    vcpus=self.vm.vcpus,
                    rootfs_image=Path(self.vm.rootfs_image),
                    kernel_image=Path(self.vm.kernel_image),
                    boot_args=self.vm.boot_args,
                )
            )
        return specs


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _emit_toml_kv(lines: list[str], key: str, val: object) -> None:
    if isinstance(val, bool):
        lines.append(f'{key} = {"true" if val else "false"}')
    elif isinstance(val, (int, float)):
        lines.append(f'{key} = {val}')
    elif isinstance(val, list):
        parts = [f'"{_toml_escape(str(item))}"' for item in val]
        lines.append(f'{key} = [{", ".join(parts)}]')
    else:
        lines.append(f'{key} = "{_toml_escape(str(val))}"')


def dump_toml(cfg: FleetConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    for section, body in d.items():
        if isinstance(body, dict):
            lines.append(f'[{section}]')
            for k, v in body.items():
                _emit_toml_kv(lines, k, v)
            lines.append('')
        elif section == 'verbosity' and body != 1:
            lines.append(f'{section} = {body}')
            lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> FleetConfig:
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    cfg = FleetConfig()
    for section in (
        'vm',
        'network',
        'storage',
        'runtime',
        'preflight',
        'fleet',
    ):
        if section in raw and isinstance(raw[section], dict):
            obj = getattr(cfg, section)
            for k, v in raw[section].items():
                if k in obj.__dataclass_fields__:
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def save(path: Path, cfg: FleetConfig) -> None:
    path.write_text(dump_toml(cfg), encoding='utf-8')
