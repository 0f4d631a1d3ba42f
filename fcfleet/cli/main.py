"""Top-level modal CLI wiring and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ..config import FleetConfig
from ..errors import PreflightFailure
from ..fleet import FleetController
from ..host import check_commands, require_root
from ..resource_checks import ResourcePreflight
from ..results import status_line
from ..storage import make_storage_provisioner
from ._common import _BaseCommand, _cfg_path, _load_cfg, _split_csv, log
from .config import ConfigModalCLI
from .net import NetModalCLI


def _apply_overrides(cfg: FleetConfig, args) -> FleetConfig:
    ips = _split_csv(args.ips)
    if ips:
        cfg.vm.guest_ips = ips
    if args.count:
        cfg.vm.count = int(args.count)
    if args.strategy:
        cfg.storage.strategy = str(args.strategy)
    cfg.validate()
    return cfg


class LaunchCLI(_BaseCommand):
    """Provision and start every configured VM, then stay resident."""

    ips = scfg.Value('', help='Comma separated guest IPs (overrides vm.guest_ips).')
    count = scfg.Value(0, help='Number of VMs (extends IPs sequentially).')
    strategy = scfg.Value(
        '', help='Rootfs strategy override: reflink or overlay.'
    )
    no_wait = scfg.Value(
        False,
        isflag=True,
        help='Exit after the fleet pass instead of supervising the VMs.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _apply_overrides(_load_cfg(args.config), args)
        require_root()
        missing, missing_opt = check_commands(cfg.runtime.firecracker_bin)
        if missing:
            raise RuntimeError(
                f'Missing required host commands: {", ".join(missing)}'
            )
        if missing_opt:
            log.warning('Missing optional host commands: {}', ', '.join(missing_opt))

        controller = FleetController.from_config(cfg)
        outcome = controller.launch_fleet(cfg.vm_specs())
        print(outcome.render_summary(ssh_user=cfg.vm.ssh_user))
        if not outcome.running():
            return 1
        if not args.no_wait:
            controller.wait_forever()
        return 0 if not outcome.failed() else 1


class PreflightCLI(_BaseCommand):
    """Report whether each configured VM fits current host headroom."""

    ips = scfg.Value('', help='Comma separated guest IPs (overrides vm.guest_ips).')
    count = scfg.Value(0, help='Number of VMs (extends IPs sequentially).')
    strategy = scfg.Value('', help='Rootfs strategy override.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _apply_overrides(_load_cfg(args.config), args)
        preflight = ResourcePreflight(
            mem_headroom_mb=cfg.preflight.mem_headroom_mb,
            disk_headroom_mb=cfg.preflight.disk_headroom_mb,
        )
        storage = make_storage_provisioner(
            cfg.storage.strategy, cfg.storage.base_dir
        )
        failures = 0
        for spec in cfg.vm_specs():
            try:
                preflight.admit(
                    spec,
                    storage.vm_dir(spec.vm_id),
                    disk_mb=storage.required_disk_mb(spec.rootfs_image),
                )
            except PreflightFailure as ex:
                failures += 1
                print(status_line(False, f'{spec.vm_id} ({spec.guest_ip})', str(ex)))
            else:
                print(
                    status_line(
                        True,
                        f'{spec.vm_id} ({spec.guest_ip})',
                        f'{spec.mem_mb} MiB fits',
                    )
                )
        return 1 if failures else 0


class FleetModalCLI(scfg.ModalCLI):
    """Provision and supervise a small fleet of Firecracker microVMs."""

    launch = LaunchCLI
    preflight = PreflightCLI
    net = NetModalCLI
    config = ConfigModalCLI


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    logger.configure(extra={'vm': '-'})
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <magenta>{extra[vm]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count


def main(argv: list[str] | None = None) -> None:
    verbosity = 1
    config_value = None
    if argv is None:
        argv = sys.argv[1:]
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        if config_value is not None or _cfg_path(None).exists():
            verbosity = _load_cfg(config_value).verbosity
    except Exception:
        verbosity = 1

    _setup_logging(_count_verbose(argv), verbosity)

    try:
        rc = FleetModalCLI.main(argv=argv, _noexit=True)
    except KeyboardInterrupt:
        log.info('Interrupted; leaving running VMs to exit with this process.')
        sys.exit(130)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled fcfleet error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)
