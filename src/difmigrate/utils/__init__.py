"""
Utility modules for difmigrate.

This module contains utility classes and functions including
exceptions, configuration and logging setup.
"""

from .logging import setup_logging, get_logger

__all__ = [
    'setup_logging', 'get_logger'
]
