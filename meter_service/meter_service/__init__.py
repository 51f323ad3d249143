"""Metering services: authorization gate, session lifecycle, sweeper and reconciler."""

__version__ = "0.1.0"
