import os

from db.engine import build_engine, build_session_factory


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RADIO_INVENTORY_DB_URL = _require_env("RADIO_INVENTORY_DB_URL")
LOAN_TRANSACTION_TIMEOUT_MS = int(os.environ.get("LOAN_TRANSACTION_TIMEOUT_MS") or "25000")

engine_inventory = build_engine(
    RADIO_INVENTORY_DB_URL,
    busy_timeout_ms=LOAN_TRANSACTION_TIMEOUT_MS,
)

SessionLocalInventory = build_session_factory(engine_inventory)
