"""Provision and supervise a small fleet of Firecracker microVMs on one host."""

__version__ = '0.1.0'
