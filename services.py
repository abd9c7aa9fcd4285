from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterator, Literal, Optional, Union

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, verify_password
from config import get_settings
from database import atomic
from models import (
    MAX_ID,
    Category,
    Transaction,
    TransactionType,
    User,
    UserBalance,
    amount_to_cents,
    cents_to_amount,
    signed_cents,
)
from periods import Period
from schemas import (
    Bucket,
    ExpenseIn,
    IncomeIn,
    Statistics,
    Summary,
    TransactionIn,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPENSE_CATEGORIES = (
    "Groceries",
    "Eating out",
    "Transport",
    "Shopping",
    "Home",
    "Entertainment",
    "Services",
)
INCOME_BUCKET_NAME = "Income"
CATEGORY_NAME_MAX_LENGTH = 100
MIN_PASSWORD_LENGTH = 8

_email_adapter: TypeAdapter = TypeAdapter(EmailStr)


class LedgerError(Exception):
    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError, ValueError):
    kind = "validation_error"


class NotFound(LedgerError, ValueError):
    kind = "not_found"


class Conflict(LedgerError, ValueError):
    kind = "conflict"


class AuthenticationError(LedgerError):
    kind = "authentication_error"


class StorageError(LedgerError):
    kind = "storage_error"


@contextmanager
def _write(session: Session, event: str) -> Iterator[Session]:
    try:
        with atomic(session):
            yield session
    except SQLAlchemyError as exc:
        logger.exception(f"{event}: storage failure, rolled back")
        raise StorageError("Could not save changes; nothing was applied") from exc


def describe_schema_error(exc: SchemaValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(
            str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")
        )
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts) or "Invalid input"


_transaction_adapter: TypeAdapter = TypeAdapter(TransactionIn)

TransactionData = Union[IncomeIn, ExpenseIn]


def parse_transaction(payload: object) -> TransactionData:
    """Turn a raw mapping into the income or expense variant.

    The ``type`` field selects the variant. Income payloads lose any
    ``category_id`` they carry, expense payloads must have one.
    """
    if isinstance(payload, (IncomeIn, ExpenseIn)):
        return payload
    try:
        return _transaction_adapter.validate_python(payload)
    except SchemaValidationError as exc:
        raise ValidationError(describe_schema_error(exc)) from exc


def _check_range(start: Optional[date], end: Optional[date]) -> None:
    if start and end and start > end:
        raise ValidationError("Start date must be before end date")


def _clean_name(name: Optional[str]) -> str:
    clean = (name or "").strip()
    if not clean:
        raise ValidationError("Category name cannot be empty")
    if len(clean) > CATEGORY_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Category name must be at most {CATEGORY_NAME_MAX_LENGTH} characters"
        )
    return clean


def _clean_email(email: Optional[str]) -> str:
    try:
        return _email_adapter.validate_python((email or "").strip()).lower()
    except SchemaValidationError as exc:
        raise ValidationError("A valid email address is required") from exc


def _is_known_id(value: int) -> bool:
    return 1 <= value <= MAX_ID


def _clean_comment(comment: Optional[str]) -> Optional[str]:
    if comment is None:
        return None
    clean = comment.strip()
    return clean or None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, email: str, password: str) -> User:
        clean_email = _clean_email(email)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        existing = self.session.scalar(
            select(User).where(func.lower(User.email) == clean_email)
        )
        if existing:
            raise Conflict("User already exists")

        user = User(email=clean_email, password_hash=hash_password(password))
        with _write(self.session, "user_register"):
            self.session.add(user)
            self.session.flush()
            self.session.add(UserBalance(user_id=user.id, amount_cents=0))
            if get_settings().seed_categories:
                for name in DEFAULT_EXPENSE_CATEGORIES:
                    self.session.add(Category(user_id=user.id, name=name))
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        clean_email = (email or "").strip().lower()
        user = self.session.scalar(
            select(User).where(func.lower(User.email) == clean_email)
        )
        if not user or not verify_password(password or "", user.password_hash):
            raise AuthenticationError("Invalid credentials")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id) if _is_known_id(user_id) else None
        if not user:
            raise AuthenticationError("Unknown user")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.created_at.desc(), Category.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        if not _is_known_id(category_id):
            raise NotFound("Category not found")
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def create(self, name: str) -> Category:
        category = Category(user_id=self.user_id, name=_clean_name(name))
        with _write(self.session, "category_create"):
            self.session.add(category)
        self.session.refresh(category)
        logger.info(f"category_created: user_id={self.user_id} id={category.id}")
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        clean_name = _clean_name(name)
        with _write(self.session, "category_rename"):
            category.name = clean_name
        self.session.refresh(category)
        return category

    def usage_count(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.category_id == category_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def remove(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.usage_count(category.id)
        if in_use:
            raise Conflict(
                f"Category is used by {in_use} transaction(s); reassign or delete them first"
            )
        with _write(self.session, "category_remove"):
            self.session.delete(category)
            try:
                self.session.flush()
            except IntegrityError as exc:
                # a transaction referencing it landed after the count
                raise Conflict(
                    "Category is used by transactions; reassign or delete them first"
                ) from exc
        logger.info(f"category_removed: user_id={self.user_id} id={category_id}")


@dataclass(frozen=True)
class BalanceReconciliation:
    stored: Decimal
    recomputed: Decimal

    @property
    def drift(self) -> Decimal:
        return self.stored - self.recomputed

    @property
    def repaired(self) -> bool:
        return self.stored != self.recomputed


class BalanceService:
    """Running balance kept in ``user_balances``.

    ``apply`` and ``reverse`` never commit; they join the caller's
    transaction, and the ledger row and the total land in the same commit.
    The total only moves through an in-database increment.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _ensure_row(self) -> None:
        exists = self.session.scalar(
            select(UserBalance.user_id).where(UserBalance.user_id == self.user_id)
        )
        if exists is None:
            self.session.add(UserBalance(user_id=self.user_id, amount_cents=0))
            self.session.flush()

    def _shift(self, delta_cents: int) -> None:
        self._ensure_row()
        self.session.execute(
            update(UserBalance)
            .where(UserBalance.user_id == self.user_id)
            .values(amount_cents=UserBalance.amount_cents + delta_cents)
        )

    def apply(self, txn_type: TransactionType, amount_cents: int) -> None:
        self._shift(signed_cents(txn_type, amount_cents))

    def reverse(self, txn_type: TransactionType, amount_cents: int) -> None:
        self._shift(-signed_cents(txn_type, amount_cents))

    def current_cents(self) -> int:
        value = self.session.scalar(
            select(UserBalance.amount_cents).where(UserBalance.user_id == self.user_id)
        )
        return int(value or 0)

    def current(self) -> Decimal:
        return cents_to_amount(self.current_cents())

    def recompute_cents(self) -> int:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=-Transaction.amount_cents,
                    )
                ),
                0,
            )
        ).where(Transaction.user_id == self.user_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def recompute(self) -> Decimal:
        return cents_to_amount(self.recompute_cents())

    def reconcile(self) -> BalanceReconciliation:
        with _write(self.session, "balance_reconcile"):
            stored = self.current_cents()
            recomputed = self.recompute_cents()
            if stored != recomputed:
                self._ensure_row()
                self.session.execute(
                    update(UserBalance)
                    .where(UserBalance.user_id == self.user_id)
                    .values(amount_cents=recomputed)
                )
        result = BalanceReconciliation(
            stored=cents_to_amount(stored), recomputed=cents_to_amount(recomputed)
        )
        if result.repaired:
            logger.warning(
                f"balance_drift_repaired: user_id={self.user_id}"
                f" stored={result.stored} recomputed={result.recomputed}"
            )
        return result


@dataclass
class TransactionFilters:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    sort: Literal["newest", "oldest"] = "newest"


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _resolve_category_id(self, data: TransactionData) -> Optional[int]:
        if isinstance(data, ExpenseIn):
            return CategoryService(self.session, self.user_id).get(data.category_id).id
        return None

    def _load_for_write(self, transaction_id: int) -> Transaction:
        if not _is_known_id(transaction_id):
            raise NotFound("Transaction not found")
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def get(self, transaction_id: int) -> Transaction:
        if not _is_known_id(transaction_id):
            raise NotFound("Transaction not found")
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(populate_existing=True)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def record(self, data: Union[TransactionData, dict]) -> Transaction:
        data = parse_transaction(data)
        category_id = self._resolve_category_id(data)
        txn = Transaction(
            user_id=self.user_id,
            type=TransactionType(data.type),
            amount_cents=amount_to_cents(data.amount),
            category_id=category_id,
            date=data.date,
            comment=_clean_comment(data.comment),
        )
        with _write(self.session, "transaction_record"):
            self.session.add(txn)
            self.session.flush()
            BalanceService(self.session, self.user_id).apply(
                txn.type, txn.amount_cents
            )
        logger.info(
            f"transaction_recorded: user_id={self.user_id} id={txn.id}"
            f" type={txn.type.value}"
        )
        return self.get(txn.id)

    def update(
        self, transaction_id: int, data: Union[TransactionData, dict]
    ) -> Transaction:
        data = parse_transaction(data)
        txn = self._load_for_write(transaction_id)
        category_id = self._resolve_category_id(data)

        old_type = txn.type
        old_cents = txn.amount_cents
        with _write(self.session, "transaction_update"):
            txn.type = TransactionType(data.type)
            txn.amount_cents = amount_to_cents(data.amount)
            txn.category_id = category_id
            txn.date = data.date
            txn.comment = _clean_comment(data.comment)
            self.session.flush()

            balance = BalanceService(self.session, self.user_id)
            balance.reverse(old_type, old_cents)
            balance.apply(txn.type, txn.amount_cents)
        logger.info(
            f"transaction_updated: user_id={self.user_id} id={transaction_id}"
            f" type={old_type.value}->{data.type}"
        )
        return self.get(transaction_id)

    def remove(self, transaction_id: int) -> None:
        txn = self._load_for_write(transaction_id)
        with _write(self.session, "transaction_remove"):
            BalanceService(self.session, self.user_id).reverse(
                txn.type, txn.amount_cents
            )
            self.session.delete(txn)
        logger.info(f"transaction_removed: user_id={self.user_id} id={transaction_id}")

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        _check_range(filters.date_from, filters.date_to)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
        )
        if filters.date_from:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id is not None:
            if not _is_known_id(filters.category_id):
                return []
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.sort == "oldest":
            stmt = stmt.order_by(
                Transaction.date.asc(),
                Transaction.created_at.asc(),
                Transaction.id.asc(),
            )
        else:
            stmt = stmt.order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
        return self.session.scalars(stmt).all()


class StatisticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summarize(
        self, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> Statistics:
        _check_range(date_from, date_to)
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(
                Transaction.type,
                Transaction.category_id,
                Category.name,
                Category.created_at,
                total,
            )
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(Transaction.user_id == self.user_id)
            .group_by(
                Transaction.type,
                Transaction.category_id,
                Category.name,
                Category.created_at,
            )
        )
        if date_from:
            stmt = stmt.where(Transaction.date >= date_from)
        if date_to:
            stmt = stmt.where(Transaction.date <= date_to)
        rows = self.session.execute(stmt).all()

        income_cents = sum(
            int(row.total or 0) for row in rows if row.type == TransactionType.income
        )
        income_buckets = []
        if income_cents > 0:
            income_buckets.append((None, INCOME_BUCKET_NAME, income_cents))

        expense_rows = [
            row
            for row in rows
            if row.type == TransactionType.expense and int(row.total or 0) > 0
        ]
        expense_rows.sort(
            key=lambda row: (-int(row.total), row.created_at, row.category_id)
        )
        expense_buckets = [
            (row.category_id, row.name, int(row.total)) for row in expense_rows
        ]

        return Statistics(
            start=date_from,
            end=date_to,
            income=_summary(income_buckets),
            expense=_summary(expense_buckets),
        )

    def summarize_period(self, period: Period) -> Statistics:
        return self.summarize(period.start, period.end)


def _summary(buckets: list[tuple[Optional[int], str, int]]) -> Summary:
    total_cents = sum(cents for _, _, cents in buckets)
    return Summary(
        total=cents_to_amount(total_cents),
        buckets=[
            Bucket(
                category_id=category_id,
                name=name,
                amount=cents_to_amount(cents),
                percent=round(cents / total_cents * 100, 2) if total_cents else 0.0,
            )
            for category_id, name, cents in buckets
        ],
    )
