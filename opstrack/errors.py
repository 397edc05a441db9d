from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class NotFoundError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(status_code=404, code=code, message=message)


class InvalidArgumentError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(status_code=400, code=code, message=message)


class PermissionDeniedError(ApiError):
    def __init__(self, code: str = "PERMISSION_DENIED", message: str = "Access denied."):
        super().__init__(status_code=403, code=code, message=message)


class UploadFailedError(ApiError):
    """Raised when any file of an upload batch could not be stored.

    The message returned to the caller stays generic; the provider error is
    kept on ``cause`` for logging.
    """

    def __init__(self, file_name: str, cause: BaseException | None = None):
        super().__init__(status_code=500, code="UPLOAD_FAILED", message="File upload failed.")
        self.file_name = file_name
        self.cause = cause


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
