"""
Closed error taxonomy for the envelope core.

Every error carries a stable machine-readable ``code``. The HTTP layer maps
codes to status codes (see ``countersign.main``); service code never raises
``HTTPException`` directly.
"""

import enum
from typing import Any, Optional


class ErrorCode(str, enum.Enum):
    not_found = "not_found"
    forbidden = "forbidden"
    out_of_turn = "out_of_turn"
    invalid_state = "invalid_state"
    validation_error = "validation_error"
    store_conflict = "store_conflict"
    store_unavailable = "store_unavailable"
    provider_unavailable = "provider_unavailable"
    provider_reject = "provider_reject"
    provider_timeout = "provider_timeout"
    integrity_error = "integrity_error"
    cancelled = "cancelled"
    internal = "internal"


# User-visible messages shared by several call sites.
ACCESS_LINK_INVALID = "access link expired or invalid"
WAITING_FOR_PRIOR_SIGNER = "this envelope is waiting for a prior signer"
ENVELOPE_NOT_EDITABLE = "envelope is no longer editable"
OPERATION_FAILED = "operation cannot be completed"


class CountersignError(Exception):
    code: ErrorCode = ErrorCode.internal
    default_message: str = OPERATION_FAILED

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class NotFound(CountersignError):
    code = ErrorCode.not_found
    default_message = "resource not found"


class Forbidden(CountersignError):
    code = ErrorCode.forbidden
    default_message = ACCESS_LINK_INVALID


class OutOfTurn(CountersignError):
    code = ErrorCode.out_of_turn
    default_message = WAITING_FOR_PRIOR_SIGNER


class InvalidState(CountersignError):
    code = ErrorCode.invalid_state
    default_message = ENVELOPE_NOT_EDITABLE


class ValidationError(CountersignError):
    code = ErrorCode.validation_error
    default_message = "invalid input"


class StoreConflict(CountersignError):
    code = ErrorCode.store_conflict
    default_message = "conflicting change"


class StoreUnavailable(CountersignError):
    code = ErrorCode.store_unavailable
    default_message = "storage temporarily unavailable"


class ProviderUnavailable(CountersignError):
    code = ErrorCode.provider_unavailable
    default_message = "signing provider unavailable"


class ProviderReject(CountersignError):
    code = ErrorCode.provider_reject
    default_message = "signing provider rejected the request"


class ProviderTimeout(CountersignError):
    code = ErrorCode.provider_timeout
    default_message = "signing provider timed out"


class IntegrityError(CountersignError):
    code = ErrorCode.integrity_error
    default_message = OPERATION_FAILED


class Cancelled(CountersignError):
    code = ErrorCode.cancelled
    default_message = "request cancelled"


class Internal(CountersignError):
    code = ErrorCode.internal
    default_message = OPERATION_FAILED


class CertificateExists(StoreConflict):
    """Raised when a certificate is already stored for the envelope."""

    default_message = "certificate already exists"

    def __init__(self, certificate: Any, message: Optional[str] = None):
        super().__init__(message)
        self.certificate = certificate


RETRYABLE_PROVIDER_ERRORS = (ProviderUnavailable, ProviderTimeout)


HTTP_STATUS = {
    ErrorCode.not_found: 404,
    ErrorCode.forbidden: 403,
    ErrorCode.out_of_turn: 409,
    ErrorCode.invalid_state: 409,
    ErrorCode.validation_error: 422,
    ErrorCode.store_conflict: 409,
    ErrorCode.store_unavailable: 503,
    ErrorCode.provider_unavailable: 502,
    ErrorCode.provider_reject: 502,
    ErrorCode.provider_timeout: 504,
    ErrorCode.integrity_error: 500,
    ErrorCode.cancelled: 499,
    ErrorCode.internal: 500,
}
