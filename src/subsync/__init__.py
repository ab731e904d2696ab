"""Billing record synchronization with an external payment provider."""

__version__ = "0.1.0"
