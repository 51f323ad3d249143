"""Operator CLI for the metered rental-session billing engine."""

__version__ = "0.1.0"
