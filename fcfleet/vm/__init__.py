"""VM lifecycle exports."""

from __future__ import annotations

from .lifecycle import (
    MAX_START_ATTEMPTS,
    VMLifecycleSupervisor,
    build_machine_config,
    guest_ip_boot_arg,
)

__all__ = [
    'MAX_START_ATTEMPTS',
    'VMLifecycleSupervisor',
    'build_machine_config',
    'guest_ip_boot_arg',
]
