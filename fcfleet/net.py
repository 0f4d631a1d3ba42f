"""Host bridge, NAT rule, and per-VM tap device management."""

from __future__ import annotations

import dataclasses
import ipaddress
import os
import re
import threading
from pathlib import Path
from typing import Iterator

from loguru import logger

from .errors import HostStateError, PrivilegeError, ProvisioningFailure
from .models import HostNetworkState, NetworkAttachment, VMSpec
from .util import CmdError, is_permission_error, run_cmd

log = logger

TUN_CONTROL = '/dev/net/tun'
IFNAMSIZ = 15


def _privileged(cmd: list[str], error_cls: type[Exception]) -> str:
    """Run a host networking command, mapping failures into our taxonomy."""
    try:
        return run_cmd(cmd, sudo=True, check=True, capture=True).stdout
    except CmdError as ex:
        detail = ex.result.output
        if is_permission_error(detail):
            raise PrivilegeError(
                f'`{" ".join(cmd)}` needs root: {detail}'
            ) from ex
        raise error_cls(f'`{" ".join(cmd)}` failed: {detail}') from ex


def device_exists(name: str) -> bool:
    res = run_cmd(['ip', 'link', 'show', 'dev', name], check=False, capture=True)
    return res.code == 0


def bridge_has_address(bridge: str, cidr: str) -> bool:
    res = run_cmd(
        ['ip', '-o', '-4', 'addr', 'show', 'dev', bridge],
        check=False,
        capture=True,
    )
    if res.code != 0:
        return False
    want = ipaddress.ip_interface(cidr)
    for tok in res.stdout.split():
        if '/' not in tok:
            continue
        try:
            if ipaddress.ip_interface(tok) == want:
                return True
        except ValueError:
            continue
    return False


def nat_rule_args(subnet: str) -> list[str]:
    return ['-s', subnet, '!', '-d', subnet, '-j', 'MASQUERADE']


def forward_rule_args(subnet: str, direction: str) -> list[str]:
    return [direction, subnet, '-j', 'ACCEPT']


def _iptables_rule_exists(check_cmd: list[str]) -> bool:
    res = run_cmd(check_cmd, sudo=True, check=False, capture=True)
    if res.code != 0 and is_permission_error(res.output):
        raise PrivilegeError(f'iptables needs root: {res.output}')
    return res.code == 0


def nat_rule_exists(subnet: str) -> bool:
    return _iptables_rule_exists(
        ['iptables', '-t', 'nat', '-C', 'POSTROUTING', *nat_rule_args(subnet)]
    )


def forward_rule_exists(subnet: str, direction: str) -> bool:
    return _iptables_rule_exists(
        ['iptables', '-C', 'FORWARD', *forward_rule_args(subnet, direction)]
    )


def ensure_host_network(state: HostNetworkState) -> None:
    """
    Bring up the bridge, its address, forwarding, NAT and FORWARD rules.

    Every step checks before it creates, and ``state.ready`` short-circuits
    repeat calls, so N invocations leave the host exactly as one does.
    """
    with state.lock:
        if state.ready:
            return
        bridge = state.bridge
        if len(bridge) > IFNAMSIZ:
            raise HostStateError(
                f'Bridge name too long ({len(bridge)} > {IFNAMSIZ}): {bridge}'
            )
        if device_exists(bridge):
            log.info('Bridge exists: {}', bridge)
        else:
            log.info('Creating bridge {}', bridge)
            _privileged(
                ['ip', 'link', 'add', 'name', bridge, 'type', 'bridge'],
                HostStateError,
            )
        if not bridge_has_address(bridge, state.bridge_cidr):
            log.info('Adding {} to {}', state.bridge_cidr, bridge)
            _privileged(
                ['ip', 'addr', 'add', state.bridge_cidr, 'dev', bridge],
                HostStateError,
            )
        _privileged(['ip', 'link', 'set', 'dev', bridge, 'up'], HostStateError)

        fwd = run_cmd(
            ['sysctl', '-w', 'net.ipv4.ip_forward=1'],
            sudo=True,
            check=False,
            capture=True,
        )
        if fwd.code != 0:
            log.warning('Failed to enable IP forwarding: {}', fwd.output)

        if nat_rule_exists(state.nat_subnet):
            log.debug('NAT masquerade rule already exists for {}', state.nat_subnet)
        else:
            _privileged(
                [
                    'iptables',
                    '-t',
                    'nat',
                    '-A',
                    'POSTROUTING',
                    *nat_rule_args(state.nat_subnet),
                ],
                HostStateError,
            )
            log.info('Added NAT masquerade rule for {}', state.nat_subnet)
        for direction in ('-s', '-d'):
            # Hosts with a DROP forward policy would otherwise cut guests off.
            if forward_rule_exists(state.nat_subnet, direction):
                continue
            _privileged(
                [
                    'iptables',
                    '-I',
                    'FORWARD',
                    '1',
                    *forward_rule_args(state.nat_subnet, direction),
                ],
                HostStateError,
            )
            log.info(
                'Added FORWARD accept rule for {} {}', direction, state.nat_subnet
            )
        state.ready = True
        log.info('Host network ready (bridge={} {})', bridge, state.bridge_cidr)


def network_status(state: HostNetworkState) -> str:
    link = run_cmd(
        ['ip', '-d', 'link', 'show', 'dev', state.bridge],
        check=False,
        capture=True,
    )
    addr = run_cmd(
        ['ip', '-4', 'addr', 'show', 'dev', state.bridge],
        check=False,
        capture=True,
    )
    nat = 'present' if nat_rule_exists(state.nat_subnet) else 'missing'
    fwd = all(
        forward_rule_exists(state.nat_subnet, direction)
        for direction in ('-s', '-d')
    )
    members = run_cmd(
        ['ip', '-o', 'link', 'show', 'master', state.bridge],
        check=False,
        capture=True,
    )
    return (
        f'{link.stdout or link.stderr}{addr.stdout}'
        f'NAT {state.nat_subnet}: {nat}\n'
        f'FORWARD {state.nat_subnet}: {"present" if fwd else "missing"}\n'
        f'Members:\n{members.stdout}'
    )


def tap_holders(name: str, *, proc_root: Path = Path('/proc')) -> list[int]:
    """
    PIDs holding ``name`` open through the tun/tap control device.

    Each open ``/dev/net/tun`` descriptor reports the interface it is bound
    to in its ``fdinfo`` as ``iff:\\t<name>``.
    """
    pids: list[int] = []
    for pid_dir in proc_root.iterdir():
        if not pid_dir.name.isdigit():
            continue
        try:
            fds = list((pid_dir / 'fd').iterdir())
        except OSError:
            continue
        for fd in fds:
            try:
                if os.readlink(fd) != TUN_CONTROL:
                    continue
                info = (pid_dir / 'fdinfo' / fd.name).read_text(
                    encoding='utf-8', errors='ignore'
                )
            except OSError:
                # Processes and descriptors come and go while we scan.
                continue
            for line in info.splitlines():
                parts = line.split()
                if len(parts) == 2 and parts[0] == 'iff:' and parts[1] == name:
                    pids.append(int(pid_dir.name))
                    break
    return sorted(set(pids))


def mac_for_index(index: int) -> str:
    return f'AA:FC:00:00:{(index >> 8) & 0xFF:02X}:{index & 0xFF:02X}'


def split_tap_name(name: str) -> tuple[str, int | None]:
    m = re.fullmatch(r'(.*?)(\d+)', name)
    if m is None:
        return name, None
    return m.group(1), int(m.group(2))


class NetworkProvisioner:
    """
    Hand out tap devices attached to the shared bridge.

    Names handed out stay reserved until :meth:`release_tap`; a freshly
    attached tap is not yet opened by its VM and would otherwise look stale
    to the next allocation.
    """

    def __init__(
        self,
        state: HostNetworkState,
        *,
        tap_prefix: str = 'tap',
        max_taps: int = 256,
        proc_root: Path = Path('/proc'),
    ):
        self.state = state
        self.tap_prefix = tap_prefix
        self.max_taps = int(max_taps)
        self.proc_root = Path(proc_root)
        self.reserved: set[str] = set()
        self._alloc_lock = threading.Lock()

    def ensure_host_network(self) -> None:
        ensure_host_network(self.state)

    def _candidates(self, preferred: str) -> Iterator[str]:
        yield preferred
        base, num = split_tap_name(preferred)
        start = -1 if num is None else num
        for step in range(1, self.max_taps):
            yield f'{base}{start + step}'

    def allocate_tap(self, preferred: str) -> str:
        with self._alloc_lock:
            for name in self._candidates(preferred):
                if len(name) > IFNAMSIZ:
                    break
                if name in self.reserved:
                    continue
                if device_exists(name):
                    holders = tap_holders(name, proc_root=self.proc_root)
                    if holders:
                        log.debug('Tap {} busy (held by pids {})', name, holders)
                        continue
                    log.info('Reclaiming stale tap device {}', name)
                    self.delete_tap(name)
                self.reserved.add(name)
                log.debug('Allocated tap {}', name)
                return name
        raise ProvisioningFailure(
            f'no free tap device name starting from {preferred!r} '
            f'within {self.max_taps} candidates'
        )

    def release_tap(self, name: str) -> None:
        with self._alloc_lock:
            self.reserved.discard(name)

    def delete_tap(self, name: str) -> None:
        _privileged(['ip', 'link', 'del', 'dev', name], ProvisioningFailure)

    def attach_tap(self, name: str, bridge: str | None = None) -> None:
        bridge = bridge or self.state.bridge
        if device_exists(name):
            self.delete_tap(name)
        _privileged(
            ['ip', 'tuntap', 'add', 'dev', name, 'mode', 'tap'],
            ProvisioningFailure,
        )
        _privileged(
            ['ip', 'link', 'set', 'dev', name, 'master', bridge],
            ProvisioningFailure,
        )
        _privileged(['ip', 'link', 'set', 'dev', name, 'up'], ProvisioningFailure)
        log.info('Tap {} attached to bridge {}', name, bridge)

    def _bind(self, spec: VMSpec, preferred: str) -> NetworkAttachment:
        tap = self.allocate_tap(preferred)
        try:
            self.attach_tap(tap)
        except Exception:
            self.release_tap(tap)
            raise
        return NetworkAttachment(
            vm_id=spec.vm_id,
            tap=tap,
            bridge=self.state.bridge,
            mac=mac_for_index(spec.index),
            guest_ip=spec.guest_ip,
            prefix_len=spec.prefix_len,
            gateway_ip=spec.gateway_ip,
        )

    def provision(self, spec: VMSpec) -> NetworkAttachment:
        return self._bind(spec, f'{self.tap_prefix}{spec.index}')

    def reallocate(
        self, spec: VMSpec, attachment: NetworkAttachment
    ) -> NetworkAttachment:
        """Swap a busy tap for a freshly allocated one."""
        base, num = split_tap_name(attachment.tap)
        preferred = f'{base}{0 if num is None else num + 1}'
        fresh = self._bind(spec, preferred)
        # The busy device belongs to someone else now; forget our claim.
        self.release_tap(attachment.tap)
        return dataclasses.replace(attachment, tap=fresh.tap)
