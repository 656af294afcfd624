"""Domain errors mapped to the API error envelope."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Error with a stable machine-readable code and HTTP status."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"


class UnsupportedMediaTypeError(BadRequestError):
    code = "UNSUPPORTED_MEDIA_TYPE"


class PayloadTooLargeError(BadRequestError):
    code = "FILE_TOO_LARGE"


class InvalidStatusTransitionError(BadRequestError):
    code = "INVALID_STATUS_TRANSITION"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "ANALYSIS_IN_PROGRESS"


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"
