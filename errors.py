from typing import Optional


class BillsError(ValueError):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class UnauthorizedError(BillsError):
    status_code = 401
    code = "UNAUTHORIZED"


class ValidationError(BillsError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(BillsError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(BillsError):
    status_code = 403
    code = "FORBIDDEN"


class ConflictError(BillsError):
    status_code = 409
    code = "CONFLICT"


class DependencyError(BillsError):
    """A referenced row (usually a utility type) is gone; the item is skipped."""

    status_code = 409
    code = "DEPENDENCY_MISSING"


class TransientStoreError(BillsError):
    status_code = 503
    code = "STORE_UNAVAILABLE"


def error_body(exc: BillsError) -> dict[str, dict[str, str]]:
    return {"error": {"code": exc.code, "message": exc.message}}
