from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationApiError(ApiError):
    def __init__(self, message: str, code: str = "VALIDATION_ERROR"):
        super().__init__(status_code=422, code=code, message=message)


class ConflictApiError(ApiError):
    def __init__(self, message: str, code: str = "CONFLICT"):
        super().__init__(status_code=409, code=code, message=message)


class NotFoundApiError(ApiError):
    def __init__(self, resource: str):
        super().__init__(status_code=404, code="NOT_FOUND", message=f"{resource} not found")


class TransferConflictError(ConflictApiError):
    def __init__(self, *, person_id: int, pending_team_id: int | None):
        super().__init__(
            "A team transfer is already pending for this worker. Cancel it before requesting another.",
            code="TRANSFER_PENDING",
        )
        self.person_id = person_id
        self.pending_team_id = pending_team_id


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
