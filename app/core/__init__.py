"""
Core app providing generic infrastructure shared by domain apps.

Services (import from core.services):
    - ServiceResult: Result wrapper for expected failures
    - BaseService: Logger and transaction helpers for service classes

Exceptions (import from core.exceptions):
    - BaseApplicationError and its HTTP-mapped subclasses

Models (import directly from their modules):
    - core.models.BaseModel: created_at/updated_at timestamps
    - core.model_mixins.UUIDPrimaryKeyMixin: UUID primary key

Views (import from core.views):
    - health_check: Liveness/readiness probe
    - api_exception_handler: DRF exception handler for application errors

Note:
    Django models and model mixins are NOT imported here to avoid
    AppRegistryNotReady errors. Import them directly from their modules.
"""

# Services (no Django model dependencies)
from .services import BaseService, ServiceResult

# Exceptions (no Django dependencies)
from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

__all__ = [
    # Services
    "BaseService",
    "ServiceResult",
    # Exceptions
    "BaseApplicationError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "ConflictError",
    "ExternalServiceError",
]
