from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class BaseAPIException(HTTPException):
    """
    Base exception for API errors

    Subclasses pin the HTTP status, the stable error code and a default
    message. The rendered body is the same envelope for every error:
    {"success": false, "error": {"code", "message", "details"}}.
    """

    default_status: int = status.HTTP_400_BAD_REQUEST
    default_code: str = "ERROR_001"
    default_message: str = "Request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        self.error_code = error_code or self.default_code
        self.message = message or self.default_message
        self.details = details or {}

        super().__init__(
            status_code=status_code or self.default_status,
            detail={
                "success": False,
                "error": {
                    "code": self.error_code,
                    "message": self.message,
                    "details": self.details,
                },
            },
        )

    def __str__(self) -> str:
        return self.message


class AuthenticationError(BaseAPIException):
    """Missing or invalid admin token / webhook signature"""

    default_status = status.HTTP_401_UNAUTHORIZED
    default_code = "AUTH_001"
    default_message = "Authentication failed"


class ValidationError(BaseAPIException):
    """Validation errors, raised before any mutation"""

    default_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_code = "VALIDATION_001"
    default_message = "Validation failed"


class NotFoundError(BaseAPIException):
    default_status = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND_001"
    default_message = "Resource not found"


class ConflictError(BaseAPIException):
    """Link conflict: the reference or the user is already linked elsewhere"""

    default_status = status.HTTP_409_CONFLICT
    default_code = "CONFLICT_001"
    default_message = "Resource conflict"


class AmbiguousMatchError(BaseAPIException):
    """More than one equally valid local user for an external reference"""

    default_status = status.HTTP_409_CONFLICT
    default_code = "MATCH_AMBIGUOUS"
    default_message = "Ambiguous match"


class UpstreamUnavailable(BaseAPIException):
    """Payment processor lookup failed after retries (retryable)"""

    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "UPSTREAM_001"
    default_message = "Payment processor unavailable"


class InternalServerError(BaseAPIException):
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_001"
    default_message = "Internal server error"
