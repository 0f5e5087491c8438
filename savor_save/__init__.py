"""Savor Save order and expense ledger."""

__version__ = "0.1.0"
