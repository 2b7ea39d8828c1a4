"""Error hierarchy for the chat service.

Every failure a service or adapter can report is a ``ChatError`` subclass.
The HTTP layer renders them into the standard error envelope::

    {"status": 404, "message": "Chatroom not found"}

The WebSocket read pump treats them as business outcomes and never fans
out the offending event.
"""
import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base class for all service errors.

    Attributes:
        status_code: HTTP status the error maps to.
        message: Human-readable message placed in the envelope.
        errors: Optional per-field messages (validation failures).
    """

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[Dict[str, str]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict = {"status": self.status_code, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class BadRequestError(ChatError):
    status_code = 400
    default_message = "Bad request"


class UnauthorizedError(ChatError):
    status_code = 401
    default_message = "Unauthorized"


class ForbiddenError(ChatError):
    status_code = 403
    default_message = "Forbidden"


class NotParticipantError(ForbiddenError):
    default_message = "Sender is not a participant in the chatroom"


class MutedError(ForbiddenError):
    default_message = "User is muted"


class NotFoundError(ChatError):
    status_code = 404
    default_message = "Not found"

    def __init__(self, entity: str = "Resource", errors: Optional[Dict[str, str]] = None) -> None:
        self.entity = entity
        super().__init__(f"{entity} not found", errors)


class ConflictError(ChatError):
    status_code = 409
    default_message = "Conflict"


class InvalidPayloadError(ChatError):
    status_code = 422
    default_message = "Invalid Payload"


class TransientError(ChatError):
    """Storage or upstream transport failure. Callers may retry; we never do."""

    status_code = 500
    default_message = "Temporary backend failure"


class InternalError(ChatError):
    status_code = 500
    default_message = "Internal server error"


# =============================================================================
# FastAPI integration
# =============================================================================


def _validation_errors(exc: RequestValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for err in exc.errors():
        # drop the leading "body"/"query"/"path" segment
        loc = [str(part) for part in err.get("loc", ())][1:]
        errors[".".join(loc) or "body"] = err.get("msg", "invalid")
    return errors


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[HTTP] {request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.debug(f"[HTTP] {request.method} {request.url.path} -> {exc.status_code} {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        {"status": exc.status_code, "message": message},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidPayloadError(errors=_validation_errors(exc))
    return JSONResponse(error.to_dict(), status_code=error.status_code)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[HTTP] Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        {"status": 500, "message": "Internal server error"},
        status_code=500,
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the envelope-producing exception handlers on *app*."""
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
