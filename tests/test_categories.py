from datetime import date

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from database import Base, enable_sqlite_pragmas
from models import User
from services import (
    CategoryService,
    Conflict,
    NotFound,
    TransactionService,
    ValidationError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    event.listen(engine, "connect", enable_sqlite_pragmas)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str) -> int:
    user = User(email=email, password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    return user.id


def test_create_trims_name_and_lists_newest_first() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)

    food = categories.create("  Food ")
    rent = categories.create("Rent")

    assert food.name == "Food"
    assert [c.id for c in categories.list_all()] == [rent.id, food.id]


def test_duplicate_names_are_allowed() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)

    first = categories.create("Food")
    second = categories.create("Food")

    assert first.id != second.id
    assert [c.name for c in categories.list_all()] == ["Food", "Food"]


@pytest.mark.parametrize("name", ["", "   ", "\t\n"])
def test_blank_names_are_rejected(name: str) -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)

    with pytest.raises(ValidationError):
        categories.create(name)
    assert categories.list_all() == []


def test_rename_updates_name() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)
    food = categories.create("Food")

    renamed = categories.rename(food.id, " Groceries ")

    assert renamed.id == food.id
    assert renamed.name == "Groceries"


def test_rename_to_blank_is_rejected() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)
    food = categories.create("Food")

    with pytest.raises(ValidationError):
        categories.rename(food.id, "  ")
    assert categories.get(food.id).name == "Food"


def test_other_users_category_looks_missing() -> None:
    session = make_session()
    owner = make_user(session, "owner@example.com")
    intruder = make_user(session, "intruder@example.com")
    food = CategoryService(session, owner).create("Food")
    foreign = CategoryService(session, intruder)

    with pytest.raises(NotFound) as foreign_exc:
        foreign.rename(food.id, "Mine now")
    with pytest.raises(NotFound) as missing_exc:
        foreign.rename(food.id + 1000, "Nothing")
    assert str(foreign_exc.value) == str(missing_exc.value)

    with pytest.raises(NotFound):
        foreign.remove(food.id)
    assert foreign.list_all() == []
    assert CategoryService(session, owner).get(food.id).name == "Food"


def test_remove_unused_category() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)
    food = categories.create("Food")
    rent = categories.create("Rent")

    categories.remove(food.id)

    assert [c.id for c in categories.list_all()] == [rent.id]
    with pytest.raises(NotFound):
        categories.get(food.id)


def test_remove_category_in_use_conflicts() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)
    food = categories.create("Food")
    TransactionService(session, user_id).record(
        {
            "type": "expense",
            "amount": "12.50",
            "date": date(2024, 3, 1),
            "category_id": food.id,
        }
    )

    with pytest.raises(Conflict):
        categories.remove(food.id)
    assert [c.id for c in categories.list_all()] == [food.id]


def test_out_of_range_ids_look_missing() -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)

    for category_id in (0, -1, 10**20):
        with pytest.raises(NotFound):
            categories.get(category_id)
        with pytest.raises(NotFound):
            categories.rename(category_id, "Food")
        with pytest.raises(NotFound):
            categories.remove(category_id)


def test_remove_conflicts_when_usage_appears_after_the_check(monkeypatch) -> None:
    session = make_session()
    user_id = make_user(session, "a@example.com")
    categories = CategoryService(session, user_id)
    food = categories.create("Food")
    txn = TransactionService(session, user_id).record(
        {
            "type": "expense",
            "amount": "3",
            "date": date(2024, 3, 1),
            "category_id": food.id,
        }
    )
    monkeypatch.setattr(CategoryService, "usage_count", lambda self, category_id: 0)

    with pytest.raises(Conflict):
        categories.remove(food.id)

    assert [c.id for c in categories.list_all()] == [food.id]
    assert TransactionService(session, user_id).get(txn.id).category_id == food.id
