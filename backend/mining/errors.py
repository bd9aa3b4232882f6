"""Production engine error taxonomy.

Every failure a command can raise derives from ProductionError and carries:
- category: validation, conflict, resource, transient or internal
- code: stable identifier rendered in the API envelope
- http_status: status used by the API error handler

Validation and conflict errors are raised before any state mutation.
Resource errors abort the whole unit of work. Transient errors (Busy) mean
nothing changed and the caller may retry.
"""

import enum
from typing import Any, Dict, Optional


class ErrorCategory(enum.Enum):
    VALIDATION = 'validation'
    CONFLICT = 'conflict'
    RESOURCE = 'resource'
    TRANSIENT = 'transient'
    INTERNAL = 'internal'


class ProductionError(Exception):
    category = ErrorCategory.INTERNAL
    code = 'internal_error'
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'message': self.message,
            'error': self.code,
            'category': self.category.value,
            'details': self.details,
        }


class InvalidRequest(ProductionError):
    category = ErrorCategory.VALIDATION
    code = 'invalid_request'
    http_status = 400


class ToolLandMismatch(InvalidRequest):
    code = 'tool_land_mismatch'


class ToolNotFound(ProductionError):
    category = ErrorCategory.VALIDATION
    code = 'tool_not_found'
    http_status = 404


class SessionNotFound(ProductionError):
    category = ErrorCategory.VALIDATION
    code = 'session_not_found'
    http_status = 404


class ToolAlreadyWorking(ProductionError):
    category = ErrorCategory.CONFLICT
    code = 'tool_already_working'
    http_status = 409


class ToolDamaged(ToolAlreadyWorking):
    code = 'tool_damaged'


class ToolNotBound(ProductionError):
    category = ErrorCategory.CONFLICT
    code = 'tool_not_bound'
    http_status = 409


class SessionNotActive(ProductionError):
    category = ErrorCategory.CONFLICT
    code = 'session_not_active'
    http_status = 409


class LandUnavailable(ProductionError):
    category = ErrorCategory.CONFLICT
    code = 'land_unavailable'
    http_status = 409


class InsufficientResources(ProductionError):
    category = ErrorCategory.RESOURCE
    code = 'insufficient_resources'
    http_status = 422


class Busy(ProductionError):
    category = ErrorCategory.TRANSIENT
    code = 'busy'
    http_status = 503


class QuotaExhausted(ProductionError):
    category = ErrorCategory.CONFLICT
    code = 'yld_exhausted'
    http_status = 409


class QuotaAvailable(ProductionError):
    category = ErrorCategory.CONFLICT
    code = 'yld_not_exhausted'
    http_status = 409
