"""
Error taxonomy shared by services and routes.

Every expected failure is an AppError carrying its HTTP status and the
message shown to the client. Anything else is logged and surfaced as a
generic 500.
"""

import inspect
from functools import wraps
from typing import Any, Callable, Optional

from .logger import get_logger

logger = get_logger("errors")


class AppError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, cause: Optional[BaseException] = None):
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)


class Unauthenticated(AppError):
    status_code = 401
    default_message = "Unauthorized"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class UpstreamFailure(AppError):
    """Auth provider, database or LLM transport failure."""

    status_code = 500


class AuthProviderError(UpstreamFailure):
    default_message = "Authentication service unavailable"


def guard_unexpected(endpoint: Callable[..., Any]) -> Callable[..., Any]:
    """Convert uncaught exceptions raised by a route into UpstreamFailure.

    AppErrors pass through untouched so the registered handler can render
    them. The original exception is logged server-side only.
    """

    if inspect.iscoroutinefunction(endpoint):

        @wraps(endpoint)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await endpoint(*args, **kwargs)
            except AppError:
                raise
            except Exception as exc:
                logger.error("Unhandled error in %s: %s", endpoint.__name__, exc, exc_info=True)
                raise UpstreamFailure(cause=exc) from exc

        return async_wrapper

    @wraps(endpoint)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return endpoint(*args, **kwargs)
        except AppError:
            raise
        except Exception as exc:
            logger.error("Unhandled error in %s: %s", endpoint.__name__, exc, exc_info=True)
            raise UpstreamFailure(cause=exc) from exc

    return wrapper
