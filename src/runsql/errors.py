"""Domain-specific exceptions shared across sandbox components."""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for sandbox-specific failures."""


class ProvisioningError(SandboxError):
    """Raised when a sandbox could not be brought up."""


class ProvisioningTimeout(ProvisioningError):
    """Raised when a sandbox does not accept connections before the readiness deadline."""

    def __init__(self, message: str, *, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class MaterializationFailure(ProvisioningError):
    """Raised when schema statements or seed rows fail to apply."""


class SessionNotFound(SandboxError, LookupError):
    """Raised when a session key does not name a usable sandbox."""


class StatementFailure(SandboxError):
    """Raised when the user's SQL statement fails inside the sandbox."""


class UnsupportedEngine(SandboxError, ValueError):
    """Raised when a requested sandbox engine is not implemented."""


class SchemaParseError(SandboxError, ValueError):
    """Raised when a schema description cannot be translated into statements."""


__all__ = [
    "MaterializationFailure",
    "ProvisioningError",
    "ProvisioningTimeout",
    "SandboxError",
    "SchemaParseError",
    "SessionNotFound",
    "StatementFailure",
    "UnsupportedEngine",
]
