"""Error taxonomy for the fraud engine."""

from __future__ import annotations

from sqlalchemy.exc import DBAPIError, OperationalError


class FraudError(Exception):
    """Base class; ``code`` is stable and safe to expose to API clients."""

    code = "fraud_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(FraudError):
    code = "validation_error"


class NotFoundError(FraudError):
    code = "not_found"


class ConflictError(FraudError):
    code = "conflict"


class TransientStoreError(FraudError):
    """Retryable I/O failure against the store."""

    code = "transient_store_error"


class FatalJobError(FraudError):
    """The batch population itself cannot be read; aborts the job."""

    code = "fatal_job_error"


def is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def translate_db_error(exc: BaseException) -> BaseException:
    """Map driver-level failures onto the taxonomy; anything else passes through."""
    if isinstance(exc, FraudError):
        return exc
    if is_transient_db_error(exc):
        return TransientStoreError(str(exc.__cause__ or exc))
    return exc
