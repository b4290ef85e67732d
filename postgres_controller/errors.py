"""
Error taxonomy

Every failure surfaced by a reconcile pass is either transient (retried with
backoff) or permanent (recorded in status, not retried until the resource
changes or an operator forces it). ``classify`` maps driver and API errors
onto that split.
"""

from typing import Optional

import psycopg2
from kubernetes.client.rest import ApiException


class ControllerError(Exception):
    """Base class for all controller errors"""

    reason = "Error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        if reason:
            self.reason = reason


class ConfigError(ControllerError):
    """Invalid static configuration; fatal at startup"""

    reason = "InvalidConfiguration"


class BootstrapError(ControllerError):
    """The PgBouncer auth hook could not be set up; fatal at startup"""

    reason = "BootstrapFailed"


class TransientError(ControllerError):
    """A failure expected to clear on its own: retried with backoff"""

    reason = "TransientFailure"


class PermanentError(ControllerError):
    """A failure requiring a spec change or operator action"""

    reason = "PermanentFailure"


class ConflictError(TransientError):
    """Optimistic-concurrency conflict on a Kubernetes write"""

    reason = "Conflict"


class ShutdownRequested(TransientError):
    """The process is stopping; the pass was halted between steps"""

    reason = "ShuttingDown"


class VaultError(ControllerError):
    """Credential storage failure, wraps the underlying classified error"""

    reason = "CredentialFailure"


# SQLSTATE classes that indicate the server or connection, not the request
TRANSIENT_SQLSTATE_CLASSES = {
    "08",  # connection exception
    "40",  # transaction rollback (serialization failure, deadlock)
    "53",  # insufficient resources
    "55",  # object not in prerequisite state (lock not available, object in use)
    "57",  # operator intervention (query canceled, admin shutdown)
    "58",  # system error
}

TRANSIENT_HTTP_STATUSES = {409, 429}


def classify(error: BaseException) -> ControllerError:
    """
    Map an arbitrary exception onto the transient/permanent taxonomy

    Args:
        error: Exception raised by psycopg2, the kubernetes client or the
               controller itself

    Returns:
        A TransientError or PermanentError (controller errors pass through)
    """
    if isinstance(error, (TransientError, PermanentError)):
        return error

    if isinstance(error, VaultError):
        cause = error.__cause__
        if cause is not None:
            classified = classify(cause)
            return type(classified)(str(error), reason=error.reason)
        return TransientError(str(error), reason=error.reason)

    if isinstance(error, psycopg2.Error):
        code = getattr(error, "pgcode", None)
        message = _pg_message(error)
        if code is None:
            if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
                return TransientError(message, reason="DatabaseUnavailable")
            return PermanentError(message, reason="DatabaseError")
        if code[:2] in TRANSIENT_SQLSTATE_CLASSES:
            return TransientError(message, reason=_pg_reason(error))
        return PermanentError(message, reason=_pg_reason(error))

    if isinstance(error, ApiException):
        status = error.status or 0
        message = f"kubernetes API error {status}: {error.reason}"
        if status == 409:
            return ConflictError(message)
        if status in TRANSIENT_HTTP_STATUSES or status >= 500 or status == 0:
            return TransientError(message, reason="KubernetesUnavailable")
        return PermanentError(message, reason="KubernetesRejected")

    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return TransientError(str(error), reason="ConnectionFailure")

    return TransientError(f"{type(error).__name__}: {error}", reason="UnexpectedError")


def _pg_message(error: psycopg2.Error) -> str:
    diag = getattr(error, "diag", None)
    primary = getattr(diag, "message_primary", None) if diag is not None else None
    return primary or str(error).strip() or type(error).__name__


def _pg_reason(error: psycopg2.Error) -> str:
    """CamelCase reason derived from the psycopg2.errors class name"""
    name = type(error).__name__
    if name in ("Error", "DatabaseError", "OperationalError", "ProgrammingError"):
        return "DatabaseError"
    return name
