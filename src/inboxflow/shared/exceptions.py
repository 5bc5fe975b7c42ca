from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)


# ───────────────────────── Base & Domain Exceptions ─────────────────────────
class DomainError(Exception):
    """
    Base class for domain-level errors. Services raise these, never HTTPException.

    ``retryable`` is read at the job boundary: the queue worker reschedules
    retryable failures with backoff and dead-letters the rest immediately.
    """
    code: str = "domain_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False
    message: str
    details: Optional[Dict[str, Any]]

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.__class__.__name__
        self.details = details


class NotFoundError(DomainError):
    # generic; set a specific code via constructor if needed (e.g., "message_not_found")
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class TransientInfraError(DomainError):
    """Storage, cache or network hiccup; safe to retry with backoff."""
    code = "transient_infra_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class CryptoError(DomainError):
    code = "crypto_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def is_retryable(exc: BaseException) -> bool:
    """Domain errors declare retryability; anything unexpected is retried."""
    if isinstance(exc, DomainError):
        return exc.retryable
    return True


# ───────────────────────────── Helpers ──────────────────────────────────────

def _problem(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]],
    correlation_id: Optional[str],
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def _extract_correlation_id(req: Request) -> Optional[str]:
    return getattr(getattr(req, "state", None), "correlation_id", None)


# ─────────────────────────── Registration ───────────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def handle_app_error(req: Request, exc: DomainError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_problem(exc.code, exc.message, exc.details, _extract_correlation_id(req)),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(req: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_problem(
                "validation_error", "Request validation failed",
                {"errors": exc.errors()}, _extract_correlation_id(req),
            ),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(req: Request, exc: Exception):
        logger.error("unhandled_exception", path=req.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_problem("internal_error", "Internal server error", None, _extract_correlation_id(req)),
        )
