"""CLI commands for writing and inspecting the fleet config file."""

from __future__ import annotations

import sys

import scriptconfig as scfg
import ubelt as ub

from ..config import FleetConfig, dump_toml, save
from ._common import _BaseCommand, _cfg_path, _load_cfg


class InitCLI(_BaseCommand):
    """Write a config file populated with defaults."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite an existing config file.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        save(path, FleetConfig())
        print(f'Wrote config: {path}')
        return 0


class ConfigShowCLI(_BaseCommand):
    """Show the resolved config, including defaults."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        text = dump_toml(cfg)
        if sys.stdout.isatty():
            text = ub.highlight_code(text, lexer_name='toml')
        print(text, end='')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config subcommands."""

    init = InitCLI
    show = ConfigShowCLI
