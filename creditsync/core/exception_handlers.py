import logging
import traceback
from typing import Any, Dict

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .exceptions import InternalServerError

logger = logging.getLogger("creditsync")


def _request_context(request: Request) -> str:
    client = request.client.host if request.client else "-"
    return f"{request.method} {request.url} from {client}"


def _log_by_status(tag: str, request: Request, status_code: int, detail: Any) -> None:
    message = f"[{tag}] {_request_context(request)} -> {status_code}: {detail}"
    if status_code >= 500:
        logger.error(message)
    else:
        logger.warning(message)


def _error_body(code: str, message: str, details: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
    }


async def handle_base_api_exception(request, exc):
    # 매칭 실패/충돌 등 예상된 실패는 error_code 그대로 노출
    _log_by_status(exc.error_code, request, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.detail))


async def handle_http_exception(request, exc):
    _log_by_status("HTTPException", request, exc.status_code, exc.detail)
    if isinstance(exc.detail, dict) and "error" in exc.detail:  # type: ignore[truthy-bool]
        content = exc.detail  # type: ignore[assignment]
    else:
        content = _error_body("HTTP_ERROR", str(exc.detail), {})
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def handle_validation_error(request, exc):
    _log_by_status("RequestValidation", request, 422, exc.errors())
    content = _error_body(
        "VALIDATION_001", "Validation failed", {"errors": jsonable_encoder(exc.errors())}
    )
    return JSONResponse(status_code=422, content=content)


async def handle_unexpected_error(request, exc):
    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error(
        f"[Unhandled Error] {_request_context(request)}\n"
        f"Exception Type: {type(exc).__name__}\n"
        f"Exception Message: {str(exc)}\n\n"
        f"Full Stack Trace:\n{tb_str}"
    )

    internal = InternalServerError()
    return JSONResponse(status_code=internal.status_code, content=internal.detail)  # type: ignore[arg-type]
