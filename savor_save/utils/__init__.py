"""Utility modules."""

from savor_save.utils.logging import setup_logging

__all__ = ["setup_logging"]
