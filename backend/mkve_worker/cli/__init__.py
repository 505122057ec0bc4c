"""
Command line interface for the MKVE worker.
"""

from .commands import main
from .errors import CLIError, ConfigLoadError

__all__ = ["main", "CLIError", "ConfigLoadError"]
