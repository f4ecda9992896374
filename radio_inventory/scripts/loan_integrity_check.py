#!/usr/bin/env python3
"""Loan/device consistency checks for the radio inventory store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import and_, exists, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import aliased

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.engine import build_engine
from models.inventory_models import Device, Loan
from services.device_status import DeviceStatus


EXPECTED_TABLES = ["Devices", "Loans"]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _count(engine: Engine, stmt) -> int:
    with engine.connect() as conn:
        return int(conn.execute(stmt).scalar() or 0)


def _count_check(engine: Engine, name: str, stmt) -> CheckResult:
    count = _count(engine, stmt)
    return CheckResult(name, count == 0, f"count={count}")


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_invariant_checks(engine: Engine) -> list[CheckResult]:
    active = Loan.ReturnedAt.is_(None)
    on_loan = DeviceStatus.ON_LOAN.value
    other = aliased(Loan)

    multiple_active = (
        select(func.count())
        .select_from(
            select(Loan.DeviceID)
            .where(active)
            .group_by(Loan.DeviceID)
            .having(func.count() > 1)
            .subquery()
        )
    )
    on_loan_without_loan = (
        select(func.count())
        .select_from(Device)
        .where(
            Device.Status == on_loan,
            ~exists().where(and_(other.DeviceID == Device.DeviceID, other.ReturnedAt.is_(None))),
        )
    )
    active_loan_not_on_loan = (
        select(func.count())
        .select_from(Loan)
        .join(Device, Device.DeviceID == Loan.DeviceID)
        .where(active, Device.Status != on_loan)
    )
    returned_before_borrowed = (
        select(func.count())
        .select_from(Loan)
        .where(Loan.ReturnedAt.is_not(None), Loan.ReturnedAt <= Loan.BorrowedAt)
    )
    orphan_loans = (
        select(func.count())
        .select_from(Loan)
        .outerjoin(Device, Device.DeviceID == Loan.DeviceID)
        .where(Device.DeviceID.is_(None))
    )

    return [
        _count_check(engine, "loans:multiple_active_per_device", multiple_active),
        _count_check(engine, "devices:on_loan_without_active_loan", on_loan_without_loan),
        _count_check(engine, "loans:active_on_device_not_on_loan", active_loan_not_on_loan),
        _count_check(engine, "loans:returned_not_after_borrowed", returned_before_borrowed),
        _count_check(engine, "loans:orphan_deviceid", orphan_loans),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_status_summary(engine: Engine) -> None:
    _print_section("Device Status Summary")
    with engine.connect() as conn:
        rows = conn.execute(
            select(Device.Status, func.count()).group_by(Device.Status).order_by(Device.Status)
        ).all()
    for status, count in rows:
        print(f"{status}: {int(count)}")
    print(f"active loans: {_count(engine, select(func.count()).select_from(Loan).where(Loan.ReturnedAt.is_(None)))}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Radio inventory loan integrity check")
    parser.add_argument("--db-url", default=os.environ.get("RADIO_INVENTORY_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RADIO_INVENTORY_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = build_engine(db_url)
        existence = _run_existence_checks(engine)
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", existence)
    if not all(row.ok for row in existence):
        return 1

    invariants = run_invariant_checks(engine)
    _print_results("Loan Invariants", invariants)
    _print_status_summary(engine)
    return 0 if all(row.ok for row in invariants) else 1


if __name__ == "__main__":
    sys.exit(main())
