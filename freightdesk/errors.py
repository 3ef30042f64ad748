"""Action results.

Every action returns either a success payload or ``{"error": message, "kind": kind}``.
Handlers raise one of the ``ActionError`` subclasses below; ``@action`` turns
them (and database failures) into the error value so nothing propagates past
the endpoint.
"""
import functools
import inspect
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError

logger = logging.getLogger(__name__)

MIGRATION_MESSAGE = "Required tables do not exist. Please run the database migration."


class ActionError(Exception):
    kind = "backend"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ActionError):
    kind = "validation"


class Unauthorized(ActionError):
    kind = "auth"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFound(ActionError):
    kind = "not_found"


class Conflict(ActionError):
    kind = "conflict"


class BackendUnavailable(ActionError):
    kind = "backend"


def error_result(message: str, kind: str) -> dict:
    return {"error": message, "kind": kind}


def _missing_table(exc: SQLAlchemyError) -> bool:
    text = str(getattr(exc, "orig", exc)).lower()
    return "no such table" in text or ("relation" in text and "does not exist" in text)


def translate_db_error(exc: SQLAlchemyError, conflict: Optional[str] = None) -> ActionError:
    if isinstance(exc, IntegrityError):
        return Conflict(conflict or str(exc.orig))
    if isinstance(exc, (OperationalError, ProgrammingError)) and _missing_table(exc):
        return BackendUnavailable(MIGRATION_MESSAGE)
    return BackendUnavailable(str(getattr(exc, "orig", exc)))


def _handle(exc: Exception, name: str, fallback: str, conflict: Optional[str]) -> dict:
    if isinstance(exc, ActionError):
        return error_result(exc.message, exc.kind)
    if isinstance(exc, SQLAlchemyError):
        logger.warning("%s: database error: %s", name, exc)
        err = translate_db_error(exc, conflict)
        return error_result(err.message, err.kind)
    logger.exception("%s failed", name)
    return error_result(fallback, "backend")


def action(fallback: str = "An unexpected error occurred", conflict: Optional[str] = None):
    """Wrap an endpoint so every failure comes back as an error value.

    ``conflict`` is the message used when the database reports a unique
    violation; without it the driver's text is returned.
    """
    def decorator(fn):
        name = fn.__name__

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    return _handle(exc, name, fallback, conflict)
            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                return _handle(exc, name, fallback, conflict)
        return wrapper

    return decorator
