"""
CLI-specific error types.

All CLI errors inherit from CLIError for consistent handling.
"""


class CLIError(Exception):
    """Base exception for all CLI-related failures."""
    pass


class ConfigLoadError(CLIError):
    """Raised when the worker configuration cannot be loaded."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load configuration {path}: {reason}")
