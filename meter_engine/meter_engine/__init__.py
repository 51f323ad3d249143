"""Metering engine: session lifecycle, cost accrual and the session store."""

__version__ = "0.1.0"
