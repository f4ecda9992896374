import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Path, Query
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from db.session import LOAN_TRANSACTION_TIMEOUT_MS, SessionLocalInventory
from schemas.loans import ID_PATTERN, MAX_SKIP, CreateLoanDto, ReturnLoanDto
from services.loan_errors import LoanEngineError
from services.loan_repository import MAX_PAGE_SIZE, LoanRepository
from services.loan_service import LoanService

logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
API_LOGGER = logging.getLogger("radio_inventory.api")

app = FastAPI(title="Radio Inventory")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

_LOAN_SERVICE = LoanService(
    LoanRepository(SessionLocalInventory, transaction_timeout_ms=LOAN_TRANSACTION_TIMEOUT_MS)
)


def get_loan_service() -> LoanService:
    return _LOAN_SERVICE


def _engine_error_to_http(exc: LoanEngineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/loans/active")
def list_active_loans(
    take: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    skip: Optional[int] = Query(None, ge=0, le=MAX_SKIP),
    service: LoanService = Depends(get_loan_service),
):
    API_LOGGER.info(
        "GET /api/loans/active take=%s skip=%s",
        take if take is not None else "default",
        skip if skip is not None else "default",
    )
    try:
        loans = service.find_active(take, skip)
    except LoanEngineError as exc:
        raise _engine_error_to_http(exc) from exc
    return {"data": loans}


@app.post("/api/loans", status_code=201)
def create_loan(payload: CreateLoanDto, service: LoanService = Depends(get_loan_service)):
    API_LOGGER.info("POST /api/loans device=%s", payload.deviceId)
    try:
        loan = service.create(payload.deviceId, payload.borrowerName)
    except LoanEngineError as exc:
        raise _engine_error_to_http(exc) from exc
    return {"data": loan}


@app.patch("/api/loans/{loan_id}")
def return_loan(
    loan_id: str = Path(..., pattern=ID_PATTERN),
    payload: Optional[ReturnLoanDto] = None,
    service: LoanService = Depends(get_loan_service),
):
    API_LOGGER.info("PATCH /api/loans/%s", loan_id)
    return_note = payload.returnNote if payload else None
    try:
        loan = service.return_loan(loan_id, return_note)
    except LoanEngineError as exc:
        raise _engine_error_to_http(exc) from exc
    return {"data": loan}
