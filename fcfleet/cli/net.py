"""CLI commands for the shared host bridge and NAT rule."""

from __future__ import annotations

import scriptconfig as scfg

from ..host import require_root
from ..models import HostNetworkState
from ..net import ensure_host_network, network_status
from ._common import _BaseCommand, _load_cfg


def _host_state(config_opt: str | None) -> HostNetworkState:
    cfg = _load_cfg(config_opt)
    return HostNetworkState(
        bridge=cfg.network.bridge,
        bridge_cidr=cfg.network.bridge_cidr,
        nat_subnet=cfg.network.nat_subnet,
    )


class NetEnsureCLI(_BaseCommand):
    """Create the bridge, its address, and the NAT rule if missing."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        state = _host_state(args.config)
        require_root()
        ensure_host_network(state)
        return 0


class NetStatusCLI(_BaseCommand):
    """Print bridge, address, NAT rule, and attached tap devices."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(network_status(_host_state(args.config)))
        return 0


class NetModalCLI(scfg.ModalCLI):
    """Network subcommands."""

    ensure = NetEnsureCLI
    status = NetStatusCLI
