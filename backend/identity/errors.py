"""
Identity - Error Taxonomy

Every failure surfaced by the identity, authorization, transfer and
reconciliation services is one of the kinds below. The HTTP layer maps each
kind to its own status code; kinds are never collapsed into a generic 500.
"""

from typing import Any, Dict, Optional


class IdentityError(Exception):
    """Base class for identity engine errors."""
    error_code = "identity_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.error_code, "message": self.message}
        payload.update(self.details)
        return payload


class AuthenticationError(IdentityError):
    """Missing, invalid or expired credentials."""
    error_code = "authentication_error"
    status_code = 401


class AuthorizationError(IdentityError):
    """Authenticated, but the role does not permit the action."""
    error_code = "authorization_error"
    status_code = 403


class ForbiddenError(AuthorizationError):
    """The identity has no access to the requested scope or resource."""
    error_code = "forbidden"


class NotFoundError(IdentityError):
    error_code = "not_found"
    status_code = 404


class ScopeNotFoundError(NotFoundError):
    """Requested lodge does not exist."""
    error_code = "scope_not_found"


class SnapshotNotFoundError(NotFoundError):
    error_code = "snapshot_not_found"


class ConflictError(IdentityError):
    """Duplicate email, role already held, and similar state conflicts."""
    error_code = "conflict"
    status_code = 409


class MaintenanceLockError(ConflictError):
    """Another reconciliation or rollback holds the maintenance lock."""
    error_code = "maintenance_locked"
    status_code = 423


class ConsistencyError(IdentityError):
    """
    A multi-representation write left the stores diverged.

    Carries the observed state so an operator can verify and repair manually.
    """
    error_code = "consistency_error"
    status_code = 409

    def __init__(self, message: str, result: Any = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.result is not None and hasattr(self.result, "to_dict"):
            payload["result"] = self.result.to_dict()
        return payload


class ValidationError(IdentityError):
    error_code = "validation_error"
    status_code = 422


class ReconciliationError(IdentityError):
    """Fatal reconciliation failure (e.g. no legacy input at all)."""
    error_code = "reconciliation_error"
    status_code = 500


class RollbackError(IdentityError):
    """Rollback aborted or restored counts did not verify."""
    error_code = "rollback_error"
    status_code = 500


class ConfigurationError(IdentityError):
    error_code = "configuration_error"
    status_code = 500
