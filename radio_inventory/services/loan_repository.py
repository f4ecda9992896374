from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from db.engine import READ_ONLY_OPTIONS
from models.inventory_models import Device, Loan
from services.device_status import DeviceStatus, can_borrow, can_return, parse_status
from services.loan_errors import (
    ERROR_MESSAGES,
    LoanConflictError,
    LoanEngineError,
    LoanInternalError,
    LoanNotFoundError,
    TransactionDeadlineExceeded,
    classify_store_error,
)


LOGGER = logging.getLogger("radio_inventory.loans")

DEFAULT_PAGE_SIZE = int(os.environ.get("LOANS_DEFAULT_PAGE_SIZE") or "100")
MAX_PAGE_SIZE = int(os.environ.get("LOANS_MAX_PAGE_SIZE") or "500")
TRANSACTION_TIMEOUT_MS = int(os.environ.get("LOAN_TRANSACTION_TIMEOUT_MS") or "25000")


def serialize_device_projection(device: Device | None) -> dict | None:
    if device is None:
        return None
    return {
        "id": device.DeviceID,
        "callSign": device.CallSign,
        "status": device.Status,
    }


def serialize_loan(loan: Loan) -> dict:
    return {
        "id": loan.LoanID,
        "deviceId": loan.DeviceID,
        "borrowerName": loan.BorrowerName,
        "borrowedAt": loan.BorrowedAt,
        "returnedAt": loan.ReturnedAt,
        "returnNote": loan.ReturnNote,
        "device": serialize_device_projection(loan.Device),
    }


def _return_timestamp(borrowed_at: datetime | None, now: datetime | None = None) -> datetime:
    value = now or datetime.now()
    if borrowed_at is not None and value <= borrowed_at:
        value = borrowed_at + timedelta(microseconds=1)
    return value


class _Deadline:
    def __init__(self, limit_ms: int, clock: Callable[[], float]):
        self._limit_ms = limit_ms
        self._clock = clock
        self._started = clock()

    def check(self, step: str) -> None:
        elapsed_ms = int((self._clock() - self._started) * 1000)
        if elapsed_ms > self._limit_ms:
            raise TransactionDeadlineExceeded(step, elapsed_ms, self._limit_ms)


class LoanRepository:
    """Borrow and return transitions against the inventory store.

    Both transitions flip ``Device.Status`` with a single conditional UPDATE
    whose WHERE clause carries the expected prior status. The affected row
    count decides the outcome, so exactly one of several concurrent callers
    can win a given device or loan without holding row locks.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        transaction_timeout_ms: int = TRANSACTION_TIMEOUT_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._timeout_ms = transaction_timeout_ms
        self._clock = clock

    def find_active(self, take: int | None = None, skip: int | None = None) -> list[dict]:
        effective_take = max(0, min(take if take is not None else DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE))
        effective_skip = max(0, skip or 0)
        LOGGER.debug("Finding active loans (take=%s, skip=%s)", effective_take, effective_skip)

        stmt = (
            select(Loan)
            .options(joinedload(Loan.Device))
            .where(Loan.ReturnedAt.is_(None))
            .order_by(Loan.BorrowedAt.desc(), Loan.LoanID.desc())
            .limit(effective_take)
            .offset(effective_skip)
        )
        try:
            with self._session_factory() as db:
                db.connection(execution_options=READ_ONLY_OPTIONS)
                return [serialize_loan(loan) for loan in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as exc:
            raise classify_store_error(exc, operation="find active loans") from exc

    def create(self, device_id: str, borrower_name: str) -> dict:
        LOGGER.debug("Creating loan for device %s", device_id)

        # Unguarded read for a precise 404/409; the guarded update below is
        # what actually decides the race.
        try:
            device = self._find_device_snapshot(device_id)
        except SQLAlchemyError as exc:
            raise classify_store_error(exc, operation="look up device") from exc
        if device is None:
            raise LoanNotFoundError(ERROR_MESSAGES["DEVICE_NOT_FOUND"], reason="device_not_found")
        if not can_borrow(device):
            raise LoanConflictError(ERROR_MESSAGES["DEVICE_NOT_AVAILABLE"], reason="device_not_available")

        deadline = _Deadline(self._timeout_ms, self._clock)
        try:
            with self._session_factory.begin() as db:
                self._apply_statement_timeout(db)
                claimed = self._swap_device_status(db, device_id, DeviceStatus.AVAILABLE, DeviceStatus.ON_LOAN)
                if not claimed:
                    LOGGER.info("Device %s was loaned by a concurrent request", device_id)
                    raise LoanConflictError(ERROR_MESSAGES["DEVICE_JUST_LOANED"], reason="device_just_loaned")
                deadline.check("claim device")

                loan = self._insert_loan(db, device_id, borrower_name)
                deadline.check("insert loan")
                payload = serialize_loan(loan)
        except LoanEngineError:
            raise
        except (SQLAlchemyError, TransactionDeadlineExceeded) as exc:
            raise classify_store_error(exc, operation="create loan") from exc

        LOGGER.debug("Loan %s created for device %s", payload["id"], device_id)
        return payload

    def return_loan(self, loan_id: str, return_note: str | None) -> dict:
        LOGGER.debug("Returning loan %s", loan_id)

        deadline = _Deadline(self._timeout_ms, self._clock)
        try:
            with self._session_factory.begin() as db:
                self._apply_statement_timeout(db)

                loan = db.get(Loan, loan_id)
                if loan is None:
                    raise LoanNotFoundError(ERROR_MESSAGES["LOAN_NOT_FOUND"], reason="loan_not_found")
                if not can_return(loan):
                    raise LoanConflictError(ERROR_MESSAGES["LOAN_ALREADY_RETURNED"], reason="already_returned")
                device_id = loan.DeviceID
                borrowed_at = loan.BorrowedAt

                released = self._swap_device_status(db, device_id, DeviceStatus.ON_LOAN, DeviceStatus.AVAILABLE)
                if not released:
                    cause = self._describe_device_mismatch(db, device_id)
                    LOGGER.warning(
                        "Race condition detected during loan return (loan=%s, device=%s, cause=%s)",
                        loan_id,
                        device_id,
                        cause,
                    )
                    raise LoanConflictError(
                        ERROR_MESSAGES["DEVICE_STATUS_CHANGED"],
                        reason="device_status_changed",
                        cause=cause,
                    )
                deadline.check("release device")

                closed = self._close_loan(db, loan_id, _return_timestamp(borrowed_at), return_note)
                if not closed:
                    LOGGER.warning("Loan %s was returned by a concurrent request", loan_id)
                    raise LoanConflictError(ERROR_MESSAGES["LOAN_JUST_RETURNED"], reason="loan_just_returned")

                db.expire_all()
                loan = db.execute(
                    select(Loan).options(joinedload(Loan.Device)).where(Loan.LoanID == loan_id)
                ).scalars().first()
                if loan is None or loan.ReturnedAt is None:
                    LOGGER.error("Loan %s has no return time after a successful update", loan_id)
                    raise LoanInternalError(ERROR_MESSAGES["RETURN_NOT_RECORDED"], reason="return_not_recorded")
                deadline.check("close loan")
                payload = serialize_loan(loan)
        except LoanEngineError:
            raise
        except (SQLAlchemyError, TransactionDeadlineExceeded) as exc:
            raise classify_store_error(exc, operation="return loan") from exc

        LOGGER.debug("Loan %s returned", loan_id)
        return payload

    def _find_device_snapshot(self, device_id: str) -> Any:
        with self._session_factory() as db:
            db.connection(execution_options=READ_ONLY_OPTIONS)
            return db.get(Device, device_id)

    def _apply_statement_timeout(self, db: Session) -> None:
        if db.get_bind().dialect.name != "postgresql":
            return
        db.execute(text(f"SET LOCAL statement_timeout = {max(int(self._timeout_ms), 1)}"))

    def _swap_device_status(
        self,
        db: Session,
        device_id: str,
        expected: DeviceStatus,
        new: DeviceStatus,
    ) -> bool:
        result = db.execute(
            update(Device)
            .where(Device.DeviceID == device_id, Device.Status == expected.value)
            .values(Status=new.value, UpdatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _insert_loan(self, db: Session, device_id: str, borrower_name: str) -> Loan:
        now = datetime.now()
        loan = Loan(
            DeviceID=device_id,
            BorrowerName=borrower_name,
            BorrowedAt=now,
            ReturnedAt=None,
            ReturnNote=None,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(loan)
        db.flush()
        return loan

    def _close_loan(self, db: Session, loan_id: str, returned_at: datetime, return_note: str | None) -> bool:
        result = db.execute(
            update(Loan)
            .where(Loan.LoanID == loan_id, Loan.ReturnedAt.is_(None))
            .values(ReturnedAt=returned_at, ReturnNote=return_note, UpdatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _describe_device_mismatch(self, db: Session, device_id: str) -> str:
        status = db.execute(select(Device.Status).where(Device.DeviceID == device_id)).scalar()
        if status is None:
            return "device_missing"
        if parse_status(status) is DeviceStatus.AVAILABLE:
            return "duplicate_return"
        return f"external_override:{status}"
