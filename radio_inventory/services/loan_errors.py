from __future__ import annotations

import logging

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError


LOGGER = logging.getLogger("radio_inventory.loans")

ERROR_MESSAGES = {
    "DEVICE_NOT_FOUND": "Device not found.",
    "DEVICE_NOT_AVAILABLE": "Device is already on loan or not available.",
    "DEVICE_JUST_LOANED": "Device was just loaned.",
    "DEVICE_STATUS_CHANGED": "Device status has already changed.",
    "LOAN_NOT_FOUND": "Loan not found.",
    "LOAN_ALREADY_RETURNED": "Loan has already been returned.",
    "LOAN_JUST_RETURNED": "Loan was just returned by someone else.",
    "TRANSACTION_TIMEOUT": "Database operation took too long. Please try again.",
    "TRANSACTION_CONFLICT": "Conflict with a concurrent change. Please try again.",
    "RETURN_NOT_RECORDED": "Return time could not be recorded.",
    "DATABASE_OPERATION_FAILED": "Database operation failed.",
}

# query_canceled (statement_timeout), lock_not_available (lock_timeout)
TIMEOUT_SQLSTATES = {"57014", "55P03"}
# serialization_failure, deadlock_detected, unique_violation
CONFLICT_SQLSTATES = {"40001", "40P01", "23505"}


class LoanEngineError(RuntimeError):
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str, *, reason: str | None = None, cause: str | None = None):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.cause = cause


class LoanNotFoundError(LoanEngineError):
    kind = "NotFound"
    status_code = 404


class LoanConflictError(LoanEngineError):
    kind = "Conflict"
    status_code = 409


class LoanTimeoutError(LoanEngineError):
    kind = "Timeout"
    status_code = 408


class LoanInternalError(LoanEngineError):
    kind = "Internal"
    status_code = 500


class TransactionDeadlineExceeded(RuntimeError):
    def __init__(self, step: str, elapsed_ms: int, limit_ms: int):
        super().__init__(f"transaction exceeded {limit_ms}ms after {step} ({elapsed_ms}ms elapsed)")
        self.step = step
        self.elapsed_ms = elapsed_ms
        self.limit_ms = limit_ms


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    for attr in ("pgcode", "sqlstate"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def _is_sqlite_lock_timeout(exc: DBAPIError) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    text = str(getattr(exc, "orig", exc) or "").lower()
    return "database is locked" in text or "database table is locked" in text


def _is_unique_violation(exc: DBAPIError) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    text = str(getattr(exc, "orig", exc) or "").lower()
    return "unique" in text or _sqlstate(exc) == "23505"


def classify_store_error(exc: BaseException, *, operation: str) -> LoanEngineError:
    """Translate a store failure into the engine's error taxonomy.

    The raw error is logged here and never copied into the returned error, so
    callers can surface ``message`` without leaking driver or SQL details.
    """
    if isinstance(exc, LoanEngineError):
        return exc

    if isinstance(exc, TransactionDeadlineExceeded):
        LOGGER.error("Transaction timeout during %s: %s", operation, exc)
        return LoanTimeoutError(ERROR_MESSAGES["TRANSACTION_TIMEOUT"], reason="transaction_timeout")

    if isinstance(exc, StaleDataError):
        LOGGER.warning("Guarded write matched no row during %s: %s", operation, exc)
        return LoanConflictError(ERROR_MESSAGES["TRANSACTION_CONFLICT"], reason="row_changed")

    if isinstance(exc, DBAPIError):
        code = _sqlstate(exc)
        if code in TIMEOUT_SQLSTATES or _is_sqlite_lock_timeout(exc):
            LOGGER.error("Database timeout during %s: %s", operation, exc.orig)
            return LoanTimeoutError(ERROR_MESSAGES["TRANSACTION_TIMEOUT"], reason="transaction_timeout")
        if code in CONFLICT_SQLSTATES or _is_unique_violation(exc):
            LOGGER.warning("Transaction conflict during %s: %s", operation, exc.orig)
            return LoanConflictError(ERROR_MESSAGES["TRANSACTION_CONFLICT"], reason="transaction_conflict")

    LOGGER.error("Failed to %s: %s", operation, exc, exc_info=exc)
    return LoanInternalError(ERROR_MESSAGES["DATABASE_OPERATION_FAILED"], reason="store_failure")
