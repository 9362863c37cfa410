"""Exception hierarchy shared by every NewDoli component.

Errors the core can absorb (offline fallback, config decode failures) are
recorded as state. The classes below are what remains: failures that are
raised to the caller with a human-readable message.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NewDoliError(Exception):
    """
    Base exception for all NewDoli errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "CFG_001")
        details: Additional context as a dictionary
    """

    default_code = "ND_000"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# CONFIGURATION / VALIDATION
# =============================================================================

class ConfigurationError(NewDoliError):
    """The Dolibarr base URL is missing or unusable."""

    default_code = "CFG_001"


class FieldValidationError(NewDoliError):
    """A single user-supplied field failed local validation."""

    default_code = "VAL_001"

    def __init__(self, field: str, message: str, **kwargs):
        details = kwargs.pop("details", {})
        details["field"] = field
        super().__init__(message, details=details, **kwargs)
        self.field = field


# =============================================================================
# REMOTE GATEWAY
# =============================================================================

class APIError(NewDoliError):
    """Generic API error."""

    default_code = "API_000"


class TransportError(APIError):
    """The request never produced an HTTP response (DNS, refused, timeout)."""

    default_code = "API_001"


class ResponseError(APIError):
    """The backend answered with a non-2xx status."""

    default_code = "API_002"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code


class AuthError(ResponseError):
    """The backend rejected the credential (401/403)."""

    default_code = "API_003"


class PayloadError(APIError):
    """The backend answered 2xx but the body is not what the contract promises."""

    default_code = "API_004"


class LoginError(APIError):
    """Credential exchange failed."""

    default_code = "AUTH_001"


# =============================================================================
# SESSION
# =============================================================================

class AuthenticationInProgressError(NewDoliError):
    """A login was attempted while another one is still running."""

    default_code = "AUTH_002"
