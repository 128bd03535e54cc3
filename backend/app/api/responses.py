"""Response envelope — ``{success, code, message, ...data}`` for every API result."""

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.services.results import ServiceResult

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
}


class ApiError(Exception):
    """Raised by dependencies and routes to short-circuit with an error envelope."""

    def __init__(self, status_code: int, code: str, message: str, **data: Any) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.data = data


def envelope(
    success: bool,
    code: str,
    message: str,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
    **data: Any,
) -> JSONResponse:
    body = {"success": success, "code": code, "message": message}
    body.update({k: v for k, v in data.items() if k not in body})
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def result_response(result: ServiceResult) -> JSONResponse:
    return envelope(
        result.success,
        result.code,
        result.message,
        status_code=result.status_code,
        **result.data,
    )


def error_code_for_status(status_code: int) -> str:
    return _HTTP_CODES.get(status_code, "INTERNAL_ERROR" if status_code >= 500 else "ERROR")
