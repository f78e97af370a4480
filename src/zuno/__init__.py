"""Zuno wallet client core: passkey authentication and local-state sync."""

__version__ = "0.1.0"
