from __future__ import annotations

from pathlib import Path

import scriptconfig as scfg
import ubelt as ub
from loguru import logger

from ..config import FleetConfig, load

log = logger

DEFAULT_CONFIG_NAME = '.fcfleet.toml'


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help=f'Path to config TOML (default: {DEFAULT_CONFIG_NAME}).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def global_config_path() -> Path:
    return Path(ub.Path.appdir('fcfleet', type='config')) / 'config.toml'


def _cfg_path(p: str | None) -> Path:
    """Explicit path, else ./.fcfleet.toml, else the per-user config file."""
    if p:
        return Path(p).resolve()
    local = Path(DEFAULT_CONFIG_NAME).resolve()
    if local.exists():
        return local
    user = global_config_path()
    return user if user.exists() else local


def _load_cfg(config_path: str | None) -> FleetConfig:
    """Load config; built-in defaults apply only when no path was given."""
    path = _cfg_path(config_path)
    if not path.exists():
        if config_path is not None:
            raise FileNotFoundError(
                f'Config not found: {path}. Run: fcfleet config init --config {path}'
            )
        log.debug('No {} in cwd; using built-in defaults', DEFAULT_CONFIG_NAME)
        return FleetConfig().expanded_paths()
    return load(path).expanded_paths()


def _split_csv(text: str) -> list[str]:
    return [part.strip() for part in str(text or '').split(',') if part.strip()]


__all__ = [name for name in globals() if not name.startswith('__')]
