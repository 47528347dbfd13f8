"""Custom exceptions used across praxisauth.

Policy outcomes (denials, rejected grants) are never raised; they travel as
:class:`~praxisauth.security.models.ReasonCode` values. The exceptions below
cover configuration problems, explicit guard failures and infrastructure
faults, which callers handle separately from policy denials.
"""
from __future__ import annotations


class PraxisAuthError(Exception):
    """Base exception for all package-specific errors."""


class ConfigurationError(PraxisAuthError):
    """Raised when configuration loading or validation fails."""


class SecurityError(PraxisAuthError):
    """Raised when security policies are violated."""


class PermissionDeniedError(SecurityError):
    """Raised by coarse guards when a subject lacks a permission."""

    def __init__(self, required_permission: str, role: str | None) -> None:
        super().__init__(f"Role {role or 'unknown'} lacks permission {required_permission}")
        self.required_permission = required_permission
        self.role = role


class InfrastructureError(PraxisAuthError):
    """Raised when a collaborator the evaluator depends on is unavailable."""


class StoreUnavailableError(InfrastructureError):
    """Raised when a grant or delegation store cannot be read or written."""


class ResourceLoaderError(InfrastructureError):
    """Raised when the resource loader fails to resolve an instance."""


class ResourceLoaderTimeout(ResourceLoaderError):
    """Raised when the resource loader exceeds its time budget."""


class AuditWriteError(InfrastructureError):
    """Raised when audit entries could not be persisted."""


__all__ = [
    "PraxisAuthError",
    "ConfigurationError",
    "SecurityError",
    "PermissionDeniedError",
    "InfrastructureError",
    "StoreUnavailableError",
    "ResourceLoaderError",
    "ResourceLoaderTimeout",
    "AuditWriteError",
]
