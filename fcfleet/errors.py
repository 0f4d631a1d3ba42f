"""Project-specific exception types."""

from __future__ import annotations


class FleetError(RuntimeError):
    """Base error for domain-level fcfleet failures."""


class PreflightFailure(FleetError):
    """Raised when host memory or disk headroom is too low for one VM."""


class ProvisioningFailure(FleetError):
    """Raised when rootfs cloning/mounting or tap setup fails for one VM."""


class StartFailure(FleetError):
    """Raised when the VM runtime refuses to create or start a machine."""


class DeviceBusyError(StartFailure):
    """Raised when start fails because the attached tap device is busy."""

    def __init__(self, message: str, *, device: str = ''):
        super().__init__(message)
        self.device = device


class PrivilegeError(FleetError):
    """Raised when host operations need elevated rights we do not have."""


class HostStateError(FleetError):
    """Raised when the shared bridge or NAT rule cannot be established."""


# Errors that abort the whole process instead of a single VM.
PROCESS_FATAL = (PrivilegeError, HostStateError)
