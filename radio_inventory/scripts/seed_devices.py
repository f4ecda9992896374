#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import delete

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.engine import build_engine, build_session_factory, init_schema
from models.inventory_models import Device, Loan
from services.device_status import DeviceStatus
from services.loan_repository import LoanRepository


DEMO_DEVICES = [
    {"CallSign": "Florian 4-21", "SerialNumber": "SN-2021-001", "DeviceType": "Handheld", "Notes": "New unit, battery full"},
    {"CallSign": "Florian 4-22", "SerialNumber": "SN-2021-002", "DeviceType": "Handheld", "borrower": "Tim Schaefer"},
    {"CallSign": "Florian 4-23", "SerialNumber": "SN-2021-003", "DeviceType": "Handheld", "borrower": "Anna Berg"},
    {"CallSign": "Florian 4-24", "SerialNumber": "SN-2021-004", "DeviceType": "Mobile", "Status": DeviceStatus.DEFECT.value, "Notes": "Display broken, sent for repair"},
    {"CallSign": "Florian 4-25", "SerialNumber": "SN-2021-005", "DeviceType": "Handheld", "Status": DeviceStatus.MAINTENANCE.value, "Notes": "Battery replacement scheduled"},
]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create demo radios (and their open loans) in the inventory store.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RADIO_INVENTORY_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RADIO_INVENTORY_DB_URL env var.",
    )
    parser.add_argument("--create-schema", action="store_true", help="Create missing tables before seeding.")
    parser.add_argument("--reset", action="store_true", help="Delete all loans and devices before seeding.")
    return parser


def seed(session_factory, reset: bool = False) -> list[str]:
    if reset:
        with session_factory.begin() as db:
            db.execute(delete(Loan))
            db.execute(delete(Device))

    created: list[tuple[str, str | None]] = []
    with session_factory.begin() as db:
        for entry in DEMO_DEVICES:
            device = Device(
                CallSign=entry["CallSign"],
                SerialNumber=entry.get("SerialNumber"),
                DeviceType=entry.get("DeviceType"),
                Status=entry.get("Status", DeviceStatus.AVAILABLE.value),
                Notes=entry.get("Notes"),
            )
            db.add(device)
            db.flush()
            created.append((device.DeviceID, entry.get("borrower")))

    # Open loans go through the repository so device status and loan rows agree.
    repository = LoanRepository(session_factory)
    for device_id, borrower in created:
        if borrower:
            repository.create(device_id, borrower)
    return [device_id for device_id, _ in created]


def main() -> int:
    args = _build_parser().parse_args()
    if not args.db_url:
        print("Missing DB URL. Set RADIO_INVENTORY_DB_URL or pass --db-url.")
        return 2

    engine = build_engine(args.db_url)
    if args.create_schema:
        init_schema(engine)
    device_ids = seed(build_session_factory(engine), reset=args.reset)
    print(f"Seeded {len(device_ids)} devices.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
