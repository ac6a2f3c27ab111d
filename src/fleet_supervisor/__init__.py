"""Supervisor for fleets of autonomous build agents."""

__version__ = "0.3.0"
