"""
Exception classes raised while configuring, packaging and deploying functions.
"""
from typing import List, Optional


class DeploymentError(Exception):
    """Base class for deployment failures."""


class ConfigurationError(DeploymentError, ValueError):
    """Raised when config.yaml is missing keys or holds invalid values."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


class PackagingError(DeploymentError):
    """Raised when a function bundle cannot be built."""

    def __init__(self, message: str, source_dir: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source_dir = source_dir


class DependencyInstallError(PackagingError):
    """Raised when pip exits non-zero while installing requirements."""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        source_dir: Optional[str] = None,
    ):
        super().__init__(message, source_dir=source_dir)
        self.command = command or []
        self.returncode = returncode
