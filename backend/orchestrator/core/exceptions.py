"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if code:
            self.code = code
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication failed", code: Optional[str] = None):
        super().__init__(message, status_code=401, code=code)


class InvalidCredentialsError(AuthenticationError):
    """Invalid username or password"""
    def __init__(self):
        super().__init__("Invalid username or password", code="INVALID_CREDENTIALS")


class TokenInvalidError(AuthenticationError):
    """Access or refresh token is invalid or expired"""
    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message, code="INVALID_TOKEN")


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""

    code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class NotFoundError(BaseAPIException):
    """Resource not found"""

    code = "NOT_FOUND"

    def __init__(self, resource: str, code: Optional[str] = None):
        super().__init__(f"{resource} not found", status_code=404, code=code)


class ConflictError(BaseAPIException):
    """Resource already exists or is in a conflicting state"""

    code = "CONFLICT"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, status_code=409, code=code)


class PolicyViolationError(BaseAPIException):
    """Operation forbidden by a security policy (MFA mandate, protected group)"""

    code = "POLICY_VIOLATION"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, status_code=403, code=code)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message, status_code=422, details=details, code=code)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""

    code = "RATE_LIMITED"

    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message, status_code=429)
