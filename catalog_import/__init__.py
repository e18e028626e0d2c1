"""Supplier catalog XML import service."""

__version__ = "0.1.0"
