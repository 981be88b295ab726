"""
difmigrate CLI - Command line interface for difmigrate.

This package provides the `migrate` commands (run, status, check, new) and
the deploy pre-flight check used by the release automation.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ['app', '__version__']
