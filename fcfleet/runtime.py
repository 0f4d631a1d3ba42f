"""VM runtime contract and its Firecracker implementation."""

from __future__ import annotations

import subprocess
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx
from loguru import logger

from .errors import DeviceBusyError, StartFailure

log = logger


@dataclass
class NetworkInterface:
    host_dev_name: str
    guest_mac: str
    iface_id: str = 'eth0'


@dataclass
class MachineConfig:
    vm_id: str
    socket_path: Path
    log_path: Path
    metrics_path: Path
    console_path: Path
    kernel_image: Path
    boot_args: str
    rootfs_path: Path
    mem_mb: int
    vcpus: int
    network: Optional[NetworkInterface] = None

    def drive(self) -> dict[str, Any]:
        return {
            'drive_id': 'rootfs',
            'path_on_host': str(self.rootfs_path),
            'is_root_device': True,
            'is_read_only': False,
        }

    def machine(self) -> dict[str, Any]:
        return {'vcpu_count': self.vcpus, 'mem_size_mib': self.mem_mb}

    def boot_source(self) -> dict[str, Any]:
        return {
            'kernel_image_path': str(self.kernel_image),
            'boot_args': self.boot_args,
        }


@dataclass
class ExitInfo:
    vm_id: str
    code: int


class VMRuntime(Protocol):
    """
    The four operations the fleet needs from a hypervisor.

    Handles expose the ``config`` they were created from; the supervisor
    rebinds ``config.network`` between two ``start`` calls.
    """

    def create(self, config: MachineConfig) -> Any: ...

    def start(self, handle: Any) -> None: ...

    def wait(self, handle: Any) -> ExitInfo: ...

    def stop(self, handle: Any) -> None: ...


def is_device_busy_message(text: str) -> bool:
    low = (text or '').lower()
    return (
        'resource busy' in low
        or 'device busy' in low
        or 'os error 16' in low
    )


@dataclass
class FirecrackerMachine:
    config: MachineConfig
    process: subprocess.Popen
    console: Any = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid


class FirecrackerRuntime:
    """
    Drive the ``firecracker`` binary through its REST API socket.

    ``create`` boots the VMM process and pushes everything except the network
    interface; ``start`` binds the interface and issues ``InstanceStart``, so a
    busy tap can be swapped between two ``start`` calls.
    """

    def __init__(
        self,
        firecracker_bin: str = 'firecracker',
        *,
        setup_timeout_s: float = 5.0,
        stop_grace_s: float = 5.0,
        log_level: str = 'Info',
    ):
        self.firecracker_bin = firecracker_bin
        self.setup_timeout_s = float(setup_timeout_s)
        self.stop_grace_s = float(stop_grace_s)
        self.log_level = log_level

    def _client(self, socket_path: Path, timeout: float) -> httpx.Client:
        transport = httpx.HTTPTransport(uds=str(socket_path))
        return httpx.Client(
            transport=transport,
            base_url='http://localhost',
            timeout=max(timeout, 0.1),
        )

    def _remaining(self, deadline: float, path: str) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StartFailure(
                f'setup timeout exceeded ({self.setup_timeout_s:.1f}s) '
                f'before Firecracker API {path}'
            )
        return remaining

    def _put(
        self,
        client: httpx.Client,
        path: str,
        payload: dict,
        *,
        deadline: float,
        device: str = '',
    ) -> None:
        timeout = self._remaining(deadline, path)
        try:
            response = client.put(path, json=payload, timeout=timeout)
        except httpx.TimeoutException as ex:
            raise StartFailure(
                f'setup timeout exceeded ({self.setup_timeout_s:.1f}s) '
                f'waiting for Firecracker API {path}'
            ) from ex
        except httpx.HTTPError as ex:
            raise StartFailure(f'Firecracker API {path} unreachable: {ex}') from ex
        if response.status_code < 400:
            return
        try:
            detail = str(response.json().get('fault_message', response.text))
        except ValueError:
            detail = response.text
        detail = detail.strip()
        msg = f'Firecracker API {path} failed: {response.status_code} {detail}'
        if is_device_busy_message(detail):
            raise DeviceBusyError(msg, device=device)
        raise StartFailure(msg)

    def _wait_for_socket(self, proc: subprocess.Popen, sock: Path, deadline: float) -> None:
        while not sock.exists():
            if proc.poll() is not None:
                raise StartFailure(
                    f'firecracker exited prematurely (code={proc.returncode})'
                )
            if time.monotonic() > deadline:
                raise StartFailure(
                    f'firecracker API socket {sock} did not appear within '
                    f'{self.setup_timeout_s:.1f}s'
                )
            time.sleep(0.05)

    def create(self, config: MachineConfig) -> FirecrackerMachine:
        deadline = time.monotonic() + self.setup_timeout_s
        config.socket_path.unlink(missing_ok=True)
        for sink in (config.log_path, config.metrics_path):
            # Firecracker only appends to sinks that already exist.
            sink.write_bytes(b'')
        console = open(config.console_path, 'wb')
        cmd = [
            self.firecracker_bin,
            '--api-sock',
            str(config.socket_path),
            '--id',
            config.vm_id,
        ]
        log.bind(vm=config.vm_id).debug('Launching {}', cmd)
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=console,
                stderr=subprocess.STDOUT,
            )
        except OSError as ex:
            console.close()
            raise StartFailure(f'cannot launch {self.firecracker_bin}: {ex}') from ex
        machine = FirecrackerMachine(config=config, process=proc, console=console)
        try:
            self._wait_for_socket(proc, config.socket_path, deadline)
            with self._client(config.socket_path, self.setup_timeout_s) as client:
                self._configure(client, config, deadline)
        except StartFailure:
            self._kill(machine)
            raise
        return machine

    def _configure(
        self, client: httpx.Client, config: MachineConfig, deadline: float
    ) -> None:
        """Push everything but the network interface under one deadline."""
        self._put(
            client,
            '/logger',
            {
                'log_path': str(config.log_path),
                'level': self.log_level,
                'show_level': True,
            },
            deadline=deadline,
        )
        self._put(
            client,
            '/metrics',
            {'metrics_path': str(config.metrics_path)},
            deadline=deadline,
        )
        self._put(client, '/machine-config', config.machine(), deadline=deadline)
        self._put(client, '/boot-source', config.boot_source(), deadline=deadline)
        self._put(client, '/drives/rootfs', config.drive(), deadline=deadline)

    def start(self, handle: FirecrackerMachine) -> None:
        config = handle.config
        deadline = time.monotonic() + self.setup_timeout_s
        with self._client(config.socket_path, self.setup_timeout_s) as client:
            if config.network is not None:
                netif = asdict(config.network)
                self._put(
                    client,
                    f'/network-interfaces/{config.network.iface_id}',
                    netif,
                    deadline=deadline,
                    device=config.network.host_dev_name,
                )
            self._put(
                client,
                '/actions',
                {'action_type': 'InstanceStart'},
                deadline=deadline,
            )

    def wait(self, handle: FirecrackerMachine) -> ExitInfo:
        code = handle.process.wait()
        if handle.console is not None:
            handle.console.close()
        return ExitInfo(vm_id=handle.config.vm_id, code=code)

    def stop(self, handle: FirecrackerMachine) -> None:
        if handle.process.poll() is not None:
            return
        try:
            with self._client(handle.config.socket_path, self.setup_timeout_s) as client:
                self._put(
                    client,
                    '/actions',
                    {'action_type': 'SendCtrlAltDel'},
                    deadline=time.monotonic() + self.setup_timeout_s,
                )
        except StartFailure as ex:
            log.bind(vm=handle.config.vm_id).debug('SendCtrlAltDel failed: {}', ex)
        try:
            handle.process.wait(timeout=self.stop_grace_s)
        except subprocess.TimeoutExpired:
            self._kill(handle)

    def _kill(self, handle: FirecrackerMachine) -> None:
        proc = handle.process
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=self.stop_grace_s)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if handle.console is not None:
            handle.console.close()
