"""
Exception types for the Windows multi-arch container builder.
"""

from typing import Dict, List, Optional


class BuilderError(RuntimeError):
    """Base class for every error raised by the builder."""


class ApiError(BuilderError):
    """A Google REST call returned a non-success status."""

    def __init__(self, operation: str, status_code: int, message: str):
        self.operation = operation
        self.status_code = status_code
        self.message = message
        super().__init__(f"{operation} failed ({status_code}): {message}")


class SetupError(BuilderError):
    """Project preflight (bucket or firewall) failed; no VM was created."""


class ImageNotFoundError(BuilderError):
    """The image family backing a Windows version no longer exists."""

    def __init__(self, image_family: str, cause: Optional[Exception] = None):
        self.image_family = image_family
        self.cause = cause
        super().__init__(f"Image family not found: {image_family}")


class WaitTimeoutError(BuilderError):
    """A bounded wait gave up before its condition was met."""


class CredentialExchangeError(BuilderError):
    """The Windows password reply could not be decoded or decrypted."""


class RemoteCommandError(BuilderError):
    """A remote command finished with a non-zero exit code."""

    def __init__(self, exit_code: int, hostname: str = ""):
        self.exit_code = exit_code
        self.hostname = hostname
        where = f" on {hostname}" if hostname else ""
        super().__init__(f"command failed{where} with exit-code:{exit_code}")


class InternalConsistencyError(BuilderError):
    """An orchestration invariant was violated."""


class OperationError(BuilderError):
    """A long-running compute operation finished with errors."""

    def __init__(self, operation: str, errors: List[Dict]):
        self.operation = operation
        self.errors = errors
        details = "; ".join(
            f"{err.get('code')}: {err.get('message')}" for err in errors
        )
        super().__init__(f"Compute operation {operation} completed with errors: {details}")
