"""
HTTP plumbing shared by the public and agent apps: JSON error bodies and the
mapping from domain exceptions to status codes.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clawchat.db.crud import MessageNotFound, MessageNotEditable, StateTooLarge, InvalidState, InviteError
from clawchat.files import PromptNotFound, UploadTooLarge

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised by endpoints to answer `{"error": message}` with `status`."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(message)


def error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        return error_response(exc.status, exc.message)

    @app.exception_handler(MessageNotFound)
    async def _not_found(request: Request, exc: MessageNotFound):
        return error_response(404, "Message not found")

    @app.exception_handler(MessageNotEditable)
    async def _not_editable(request: Request, exc: MessageNotEditable):
        return error_response(400, "Cannot edit internal messages")

    @app.exception_handler(StateTooLarge)
    async def _too_large(request: Request, exc: StateTooLarge):
        limit_mb = exc.limit / (1024 * 1024)
        return error_response(400, f"State too large (max {limit_mb:g}MB)")

    @app.exception_handler(InvalidState)
    async def _invalid_state(request: Request, exc: InvalidState):
        return error_response(400, "Invalid state")

    @app.exception_handler(UploadTooLarge)
    async def _upload_too_large(request: Request, exc: UploadTooLarge):
        return error_response(413, "File too large")

    @app.exception_handler(PromptNotFound)
    async def _prompt_not_found(request: Request, exc: PromptNotFound):
        return error_response(404, "Prompt not found")

    @app.exception_handler(InviteError)
    async def _invite(request: Request, exc: InviteError):
        return error_response(exc.status, exc.reason)

    @app.exception_handler(RequestValidationError)
    async def _validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
        return JSONResponse({"error": f"Invalid {loc}: {first.get('msg', 'bad request')}"}, status_code=422)


# ── Suppress leftover ASGI RuntimeErrors caused by client disconnects ──────────
class _AsgiDisconnectFilter(logging.Filter):
    """
    Filters uvicorn 'Exception in ASGI application' records that are caused
    by normal SSE / MCP client disconnects.
    """
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)


def install_disconnect_filter() -> None:
    for name in ("uvicorn.error", "uvicorn"):
        logging.getLogger(name).addFilter(_AsgiDisconnectFilter())


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    install_disconnect_filter()
