from __future__ import annotations

"""Error taxonomy and backend error-code classification.

Backend failures arrive as ``psycopg2.Error`` instances carrying a SQLSTATE
in ``pgcode``.  The table below decides which codes are worth retrying.
Detection (:func:`has_code`) and retry policy (:func:`is_transient`) are
separate queries: ``42501`` is fatal for a grant statement but the very
same code is what :meth:`DBConnection.is_serverless` looks for when probing
a restricted system view.
"""

from enum import Enum
from typing import Dict, Optional, Union

import psycopg2


class ErrorClass(Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
LOCK_NOT_AVAILABLE = "55P03"
CONCURRENT_TRANSACTION = "XX000"
IN_FAILED_TRANSACTION = "25P02"
SYNTAX_ERROR = "42601"
UNDEFINED_OBJECT = "42704"
UNDEFINED_TABLE = "42P01"
UNDEFINED_FUNCTION = "42883"
INVALID_SCHEMA_NAME = "3F000"
INSUFFICIENT_PRIVILEGE = "42501"

ERROR_CODE_CLASSES: Dict[str, ErrorClass] = {
    SERIALIZATION_FAILURE: ErrorClass.TRANSIENT,
    DEADLOCK_DETECTED: ErrorClass.TRANSIENT,
    LOCK_NOT_AVAILABLE: ErrorClass.TRANSIENT,
    # Redshift reports concurrent catalog updates as an internal error
    CONCURRENT_TRANSACTION: ErrorClass.TRANSIENT,
    IN_FAILED_TRANSACTION: ErrorClass.TRANSIENT,
    # schema created by a parallel apply may not be visible yet
    INVALID_SCHEMA_NAME: ErrorClass.TRANSIENT,
    SYNTAX_ERROR: ErrorClass.FATAL,
    UNDEFINED_OBJECT: ErrorClass.FATAL,
    UNDEFINED_TABLE: ErrorClass.FATAL,
    UNDEFINED_FUNCTION: ErrorClass.FATAL,
    INSUFFICIENT_PRIVILEGE: ErrorClass.FATAL,
}


class GrantError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(GrantError, ValueError):
    """Invalid declaration, detected before any statement is issued."""


class MalformedIDError(GrantError, ValueError):
    """A tracked identifier does not match the expected layout."""


class NotFoundError(GrantError):
    """A principal or object referenced by a rule no longer exists."""


class DatabaseError(GrantError):
    def __init__(self, message: str, pgcode: Optional[str] = None):
        super().__init__(message)
        self.pgcode = pgcode


class TransientDBError(DatabaseError):
    """Backend error expected to go away when the operation is retried."""


class FatalDBError(DatabaseError):
    """Backend error that must be surfaced immediately."""


# ---------------------------------------------------------------------------


def _code_of(value: Union[BaseException, str, None]) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "pgcode", None)


def classify(code: Optional[str]) -> ErrorClass:
    """Return the class for *code*; unknown codes are fatal."""
    if not code:
        return ErrorClass.FATAL
    return ERROR_CODE_CLASSES.get(code, ErrorClass.FATAL)


def has_code(error: Union[BaseException, str, None], code: str) -> bool:
    """Return ``True`` if *error* carries exactly SQLSTATE *code*."""
    return _code_of(error) == code


def is_transient(error: Union[BaseException, str, None]) -> bool:
    if isinstance(error, TransientDBError):
        return True
    if isinstance(error, GrantError):
        return False
    return classify(_code_of(error)) is ErrorClass.TRANSIENT


def translate(exc: psycopg2.Error) -> DatabaseError:
    """Wrap a driver exception into :class:`TransientDBError` or :class:`FatalDBError`."""
    code = getattr(exc, "pgcode", None)
    message = (getattr(exc, "pgerror", None) or str(exc)).strip()
    if classify(code) is ErrorClass.TRANSIENT:
        return TransientDBError(message, code)
    return FatalDBError(message, code)
