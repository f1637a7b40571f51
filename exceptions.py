"""
Errors raised by request handlers.

Each one carries the HTTP status and turns itself into the response envelope:

    raise NotFoundError("Student")
    -> 404 {"success": false, "message": "Student not found"}
"""

from typing import Any, Dict, List, Optional


class SchoolError(Exception):
    """Base class for every error converted into an error envelope"""

    status_code = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None,
                 status_code: Optional[int] = None):
        self.message = message
        self.errors = errors or []
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationFailed(SchoolError):
    status_code = 400
    code = "VALIDATION_FAILED"

    def __init__(self, message: str = "Validation failed", errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, errors)

    @classmethod
    def field(cls, field: str, message: str) -> "ValidationFailed":
        return cls(message, [{"field": field, "message": message}])


class AuthenticationError(SchoolError):
    status_code = 401
    code = "AUTH_FAILED"

    def __init__(self, message: str = "Token is not valid."):
        super().__init__(message)


class AuthorizationError(SchoolError):
    status_code = 403
    code = "NOT_AUTHORIZED"

    def __init__(self, message: str = "Access denied."):
        super().__init__(message)


class NotFoundError(SchoolError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", message: Optional[str] = None):
        self.resource = resource
        super().__init__(message or f"{resource} not found")


class ConflictError(SchoolError):
    """Duplicates, dependent-record blocks and broken domain rules"""

    status_code = 400
    code = "CONFLICT"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class DatabaseUnavailable(SchoolError):
    status_code = 500
    code = "DATABASE_UNAVAILABLE"

    def __init__(self):
        super().__init__("Database not available")
