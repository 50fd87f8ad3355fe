"""
Gateway Error Taxonomy.

Every failure that can leave the dispatch pipeline is a GatewayError with
an HTTP status and an error envelope. Vendor failures are additionally
classified into ModelErrorType codes, which drive credential handling and
the model status table.
"""

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx


class ModelErrorType(str, enum.Enum):
    """Normalized vendor failure codes."""

    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INVALID_API_KEY = "INVALID_API_KEY"
    NO_CREDITS_AVAILABLE = "NO_CREDITS_AVAILABLE"
    EXPIRED_CREDENTIAL = "EXPIRED_CREDENTIAL"
    CONTENT_POLICY_VIOLATION = "CONTENT_POLICY_VIOLATION"
    REGION_RESTRICTION = "REGION_RESTRICTION"
    TEMPORARY_BLOCK = "TEMPORARY_BLOCK"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    NO_CREDENTIALS = "NO_CREDENTIALS"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class ModelError:
    """Classified failure, stored on model status rows."""

    code: ModelErrorType
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message}


# 403 bodies that do not mean the credential is bad
CONTENT_VIOLATION_KEYWORDS = ("content violates", "usage guidelines", "safety_check", "failed check")
REGION_RESTRICTION_KEYWORDS = (
    "not available in your region",
    "not supported in your country",
    "geographic restriction",
    "region restriction",
)
TEMPORARY_BLOCK_KEYWORDS = ("temporarily blocked", "temporary block", "try again later")


def classify_non_credential_403(message: str) -> Optional[ModelErrorType]:
    """
    Classify a 403 message that is NOT a credential problem.

    Returns None when the 403 should be treated as a real credential error.
    """
    lower = message.lower()
    if any(k in lower for k in CONTENT_VIOLATION_KEYWORDS):
        return ModelErrorType.CONTENT_POLICY_VIOLATION
    if any(k in lower for k in REGION_RESTRICTION_KEYWORDS):
        return ModelErrorType.REGION_RESTRICTION
    if any(k in lower for k in TEMPORARY_BLOCK_KEYWORDS):
        return ModelErrorType.TEMPORARY_BLOCK
    return None


_STATUS_CODES = {
    400: ModelErrorType.INVALID_ARGUMENT,
    401: ModelErrorType.INVALID_API_KEY,
    402: ModelErrorType.NO_CREDITS_AVAILABLE,
    404: ModelErrorType.MODEL_NOT_FOUND,
    429: ModelErrorType.RATE_LIMIT_EXCEEDED,
    500: ModelErrorType.MODEL_UNAVAILABLE,
    502: ModelErrorType.MODEL_UNAVAILABLE,
    503: ModelErrorType.MODEL_UNAVAILABLE,
}

_MESSAGE_KEYWORDS = (
    (("timeout", "timed out"), ModelErrorType.NETWORK_TIMEOUT),
    (("quota", "billing", "credit"), ModelErrorType.QUOTA_EXCEEDED),
    (("network", "connection", "dns"), ModelErrorType.CONNECTION_ERROR),
    (("no active credentials", "no credentials"), ModelErrorType.NO_CREDENTIALS),
    (("model not found", "model does not exist"), ModelErrorType.MODEL_NOT_FOUND),
    (("rate limit", "too many requests"), ModelErrorType.RATE_LIMIT_EXCEEDED),
)


def classify_error(error: BaseException) -> ModelError:
    """Map any failure to a ModelErrorType, by status code first, then message."""
    message = str(error) or error.__class__.__name__
    status = getattr(error, "status_code", None)

    if status:
        if status == 403:
            return ModelError(
                classify_non_credential_403(message) or ModelErrorType.EXPIRED_CREDENTIAL,
                message,
            )
        return ModelError(_STATUS_CODES.get(status, ModelErrorType.UNKNOWN_ERROR), message)

    if isinstance(error, httpx.TimeoutException):
        return ModelError(ModelErrorType.NETWORK_TIMEOUT, message)
    if isinstance(error, httpx.TransportError):
        return ModelError(ModelErrorType.CONNECTION_ERROR, message)

    lower = message.lower()
    for keywords, code in _MESSAGE_KEYWORDS:
        if any(k in lower for k in keywords):
            return ModelError(code, message)
    return ModelError(ModelErrorType.UNKNOWN_ERROR, message)


# =============================================================================
# Exceptions
# =============================================================================

class GatewayError(Exception):
    """Base class for errors surfaced to gateway callers."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        self.code = code

    def to_error_body(self) -> Dict[str, Any]:
        """Convert to the gateway error envelope."""
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code or self.error_type,
            }
        }


class RequestValidationFailed(GatewayError):
    """Malformed request body (empty messages, missing prompt, ...)."""

    status_code = 400
    error_type = "invalid_request_error"


class UnsupportedModelError(GatewayError):
    """No vendor can serve the requested model."""

    status_code = 400
    error_type = "unsupported_model"


class ModelNotFoundError(GatewayError):
    """Model is absent from the rate table while listed models are enforced."""

    status_code = 404
    error_type = "model_not_found"


class InsufficientCreditError(GatewayError):
    """Caller has no credit and auto-purchase cannot continue."""

    status_code = 402
    error_type = "insufficient_credit"


class ProviderUnavailableError(GatewayError):
    """Provider exists in principle but none is enabled with an active credential."""

    status_code = 503
    error_type = "provider_unavailable"


class AuthenticationRequired(GatewayError):
    """Caller identity is missing."""

    status_code = 401
    error_type = "authentication_error"


class VendorError(GatewayError):
    """Final vendor failure after retries were exhausted."""

    error_type = "vendor_error"

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        provider: Optional[str] = None,
        classified: Optional[ModelError] = None,
    ):
        super().__init__(message, status_code=status_code, code=classified.code.value if classified else None)
        self.provider = provider
        self.classified = classified


class InternalGatewayError(GatewayError):
    """Store or ledger unavailable."""

    status_code = 500
    error_type = "internal_error"
