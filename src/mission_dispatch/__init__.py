"""Operator console core: dispatch tasks to agents, track attempts, retry failures."""

__version__ = "0.1.0"
