"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import FleetModalCLI, main

__all__ = ['FleetModalCLI', 'main']
