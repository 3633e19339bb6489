"""Foundry Local integration and settings synchronization."""

__version__ = "0.1.0"
