"""
Global error handling middleware.

Maps group formation errors raised by the service layer to HTTP responses.
Proposals that fail validation are not errors; the routers return those as
regular 422 bodies.
"""
import logging
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable

from app.domain.exceptions import (
    ConcurrencyConflictError,
    ExternalServiceError,
    FormationCancelledError,
)


logger = logging.getLogger(__name__)


def _error_response(status_code: int, error: str, detail: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail, **extra},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Converts unhandled exceptions into consistent JSON error bodies.

    - ``ConcurrencyConflictError`` -> 409, retryable, with the contested plots
    - ``FormationCancelledError`` -> 409
    - ``ExternalServiceError`` -> the error's own status code
    - ``ValueError`` (including ``InputError``) -> 400
    - anything else -> 500
    """

    async def dispatch(self, request: Request, call_next: Callable):
        route = f"{request.method} {request.url.path}"

        try:
            return await call_next(request)

        except ConcurrencyConflictError as e:
            logger.warning(f"Concurrency conflict on {route}: {e.message}")
            return _error_response(
                status.HTTP_409_CONFLICT,
                "Concurrency conflict",
                e.message,
                retryable=e.retryable,
                conflicting_plot_ids=e.conflicting_plot_ids,
            )

        except FormationCancelledError as e:
            logger.info(f"Formation cancelled on {route}")
            return _error_response(status.HTTP_409_CONFLICT, "Formation cancelled", e.message)

        except ExternalServiceError as e:
            logger.error(f"External service error on {route} ({e.status_code}): {e.message}")
            return _error_response(e.status_code, "External service error", e.message)

        except ValueError as e:
            logger.warning(f"Invalid request on {route}: {e}")
            return _error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", str(e))

        except Exception as e:
            logger.exception(f"Unhandled exception on {route}: {e}")
            return _error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Internal server error",
                "An unexpected error occurred",
            )
