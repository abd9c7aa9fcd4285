import logging
import tomllib
from datetime import date
from typing import Any, Literal, Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import issue_token, read_token
from config import get_settings
from database import SessionLocal
from models import TransactionType
from periods import Period, resolve_period
from schemas import (
    Ack,
    BalanceOut,
    BalanceReconciliationOut,
    CategoryIn,
    CategoryOut,
    CredentialsIn,
    Statistics,
    TokenOut,
    TransactionOut,
    UserOut,
)
from services import (
    AuthenticationError,
    BalanceService,
    CategoryService,
    Conflict,
    LedgerError,
    NotFound,
    StatisticsService,
    StorageError,
    TransactionFilters,
    TransactionService,
    UserService,
    ValidationError,
    describe_schema_error,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()

STATUS_BY_ERROR: dict[type, int] = {
    ValidationError: 400,
    AuthenticationError: 401,
    NotFound: 404,
    Conflict: 409,
    StorageError: 500,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token")
    user_id = read_token(token.strip())
    if user_id is None:
        raise AuthenticationError("Invalid or expired token")
    UserService(db).get(user_id)
    return user_id


def _error_body(kind: str, message: str) -> dict[str, str]:
    return {"kind": kind, "message": message}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = next(
        (code for cls, code in STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500
    )
    return JSONResponse(
        status_code=status_code, content=_error_body(exc.kind, exc.message)
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=_error_body(ValidationError.kind, describe_schema_error(exc)),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"storage_failure: path={request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_body(StorageError.kind, "Storage is temporarily unavailable"),
    )


def _parse_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field}: expected a YYYY-MM-DD date") from exc


def period_from_query(
    period: Optional[str], start: Optional[str], end: Optional[str]
) -> Period:
    if period:
        try:
            return resolve_period(period, start, end)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    return Period("custom", _parse_date(start, "start"), _parse_date(end, "end"))


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/auth/register", response_model=TokenOut, status_code=201)
def register(credentials: CredentialsIn, db: Session = Depends(get_db)):
    user = UserService(db).register(credentials.email, credentials.password)
    return TokenOut(token=issue_token(user.id), user=UserOut.model_validate(user))


@app.post("/api/auth/login", response_model=TokenOut)
def login(credentials: CredentialsIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(credentials.email, credentials.password)
    return TokenOut(token=issue_token(user.id), user=UserOut.model_validate(user))


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return CategoryService(db, user_id).list_all()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(data.name)


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def rename_category(
    category_id: int,
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).rename(category_id, data.name)


@app.delete("/api/categories/{category_id}", response_model=Ack)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).remove(category_id)
    return Ack(message="Category deleted")


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[TransactionType] = None,
    category: Optional[int] = None,
    sort: Literal["newest", "oldest"] = "newest",
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        date_from=_parse_date(start, "start"),
        date_to=_parse_date(end, "end"),
        type=type,
        category_id=category,
        sort=sort,
    )
    return TransactionService(db, user_id).list(filters)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: dict[str, Any] = Body(...),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).record(payload)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: dict[str, Any] = Body(...),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).update(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", response_model=Ack)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).remove(transaction_id)
    return Ack(message="Transaction deleted")


@app.get("/api/balance", response_model=BalanceOut)
def get_balance(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return BalanceOut(balance=BalanceService(db, user_id).current())


@app.get("/api/statistics", response_model=Statistics)
def get_statistics(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    resolved = period_from_query(period, start, end)
    return StatisticsService(db, user_id).summarize_period(resolved)


@app.post("/api/admin/reconcile-balance", response_model=BalanceReconciliationOut)
def admin_reconcile_balance(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    result = BalanceService(db, user_id).reconcile()
    return BalanceReconciliationOut(
        stored=result.stored, recomputed=result.recomputed, drift=result.drift
    )
