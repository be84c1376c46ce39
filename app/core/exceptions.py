"""
Custom exception classes
"""


class ClinicException(Exception):
    """Base exception for the clinic access application"""
    retryable = False

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class AuthenticationError(ClinicException):
    """Exception for authentication failures (no session, bad credential)"""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class AuthorizationError(ClinicException):
    """Exception for authenticated callers lacking the required role"""
    def __init__(self, message: str = "Access forbidden"):
        super().__init__(message, status_code=403)


class NotFoundError(ClinicException):
    """Exception for resource not found"""
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)


class ValidationError(ClinicException):
    """Exception for rejected input"""
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, status_code=400)


class DuplicateError(ClinicException):
    """Exception for duplicate resource"""
    def __init__(self, message: str = "Resource already exists"):
        super().__init__(message, status_code=409)


class InvalidTransitionError(ClinicException):
    """Exception for a lifecycle transition not allowed from the current status"""
    def __init__(self, message: str = "Transition not allowed"):
        super().__init__(message, status_code=409)


class TokenError(ClinicException):
    """Exception for expired, consumed or malformed one-time link tokens"""
    def __init__(self, message: str = "The link is invalid or has expired"):
        super().__init__(message, status_code=400)


class RateLimitError(ClinicException):
    """Exception for rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(message, status_code=429)


class PartialFailureError(ClinicException):
    """
    A multi-step lifecycle transition stopped half way.

    The intermediate state is left in place and the operation can be re-run.
    """
    retryable = True

    def __init__(self, message: str = "Operation partially completed"):
        super().__init__(message, status_code=502)


class ProviderError(ClinicException):
    """Exception for transient identity/table provider failures"""
    retryable = True

    def __init__(self, message: str = "Identity provider unavailable"):
        super().__init__(message, status_code=503)
