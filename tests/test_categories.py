from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Base
from models import Category, TransactionType, User
from schemas import CategoryIn, CategoryUpdate, TransactionIn
from services import (
    AlreadyInactiveError,
    CategoryService,
    ConflictError,
    DEFAULT_CATEGORIES,
    InvalidInputError,
    NotFoundError,
    TransactionService,
    UserService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_user(session: Session, external_id: str = "user-a") -> User:
    user = User(external_id=external_id)
    session.add(user)
    session.commit()
    return user


def food() -> CategoryIn:
    return CategoryIn(name="Food", type=TransactionType.expense, icon="🍽️", color="#EF4444")


def test_create_trims_name_and_defaults_to_active():
    session = make_session()
    user = make_user(session)

    category = CategoryService(session, user.id).create(
        CategoryIn(name="  Groceries  ", type=TransactionType.expense)
    )

    assert category.name == "Groceries"
    assert category.is_active is True
    assert category.icon == "📦"
    assert category.color == "#6B7280"
    assert category.user_id == user.id


@pytest.mark.parametrize("name", ["", "   ", "x" * 51])
def test_create_rejects_empty_or_long_names(name):
    session = make_session()
    user = make_user(session)

    with pytest.raises(InvalidInputError):
        CategoryService(session, user.id).create(
            CategoryIn(name=name, type=TransactionType.expense)
        )


def test_create_accepts_fifty_character_name():
    session = make_session()
    user = make_user(session)

    category = CategoryService(session, user.id).create(
        CategoryIn(name="x" * 50, type=TransactionType.income)
    )
    assert len(category.name) == 50


def test_duplicate_active_name_conflicts_until_deactivated():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)

    first = service.create(food())
    with pytest.raises(ConflictError):
        service.create(food())
    with pytest.raises(ConflictError):
        service.create(CategoryIn(name=" Food ", type=TransactionType.expense))

    service.deactivate(first.id)
    second = service.create(food())

    assert second.id != first.id
    rows = session.scalars(select(Category).where(Category.name == "Food")).all()
    assert sorted(c.is_active for c in rows) == [False, True]


def test_names_differing_only_in_case_are_distinct():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    service.create(food())

    lower = service.create(CategoryIn(name="food", type=TransactionType.expense))
    umlaut = service.create(CategoryIn(name="Ärzte", type=TransactionType.expense))
    with pytest.raises(ConflictError):
        service.create(CategoryIn(name="Ärzte", type=TransactionType.expense))
    service.create(CategoryIn(name="ärzte", type=TransactionType.expense))

    assert lower.name == "food"
    assert umlaut.is_active is True
    names = [c.name for c in service.list_all(type=TransactionType.expense)]
    assert sorted(names) == sorted(["Food", "food", "Ärzte", "ärzte"])


def test_same_name_allowed_for_other_type_or_user():
    session = make_session()
    alice = make_user(session, "alice")
    bob = make_user(session, "bob")

    CategoryService(session, alice.id).create(food())
    CategoryService(session, alice.id).create(
        CategoryIn(name="Food", type=TransactionType.income)
    )
    CategoryService(session, bob.id).create(food())

    assert len(session.scalars(select(Category)).all()) == 3


def test_list_orders_by_type_then_name_and_hides_inactive():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    service.create(CategoryIn(name="Salary", type=TransactionType.income))
    transport = service.create(CategoryIn(name="Transport", type=TransactionType.expense))
    service.create(CategoryIn(name="Bonus", type=TransactionType.income))
    service.create(CategoryIn(name="Books", type=TransactionType.expense))
    service.deactivate(transport.id)

    names = [(c.type.value, c.name) for c in service.list_all()]
    assert names == [
        ("expense", "Books"),
        ("income", "Bonus"),
        ("income", "Salary"),
    ]

    expense_names = [
        c.name
        for c in service.list_all(type=TransactionType.expense, include_inactive=True)
    ]
    assert expense_names == ["Books", "Transport"]


def test_list_only_returns_own_categories():
    session = make_session()
    alice = make_user(session, "alice")
    bob = make_user(session, "bob")
    CategoryService(session, alice.id).create(food())

    assert CategoryService(session, bob.id).list_all() == []


def test_update_applies_only_supplied_fields():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    category = service.create(food())

    updated = service.update(category.id, CategoryUpdate(color="#000000"))

    assert updated.name == "Food"
    assert updated.icon == "🍽️"
    assert updated.color == "#000000"


def test_update_revalidates_name_and_checks_other_active_rows():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    service.create(food())
    travel = service.create(CategoryIn(name="Travel", type=TransactionType.expense))

    with pytest.raises(InvalidInputError):
        service.update(travel.id, CategoryUpdate(name="  "))
    with pytest.raises(ConflictError):
        service.update(travel.id, CategoryUpdate(name="Food"))

    # Renaming to its own name is not a conflict with itself.
    assert service.update(travel.id, CategoryUpdate(name="Travel")).name == "Travel"


def test_update_type_change_checks_duplicates_in_target_type():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    service.create(CategoryIn(name="Other", type=TransactionType.income))
    other_expense = service.create(CategoryIn(name="Other", type=TransactionType.expense))

    with pytest.raises(ConflictError):
        service.update(other_expense.id, CategoryUpdate(type=TransactionType.income))


def test_update_reactivation_through_is_active_checks_duplicates():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    old = service.create(food())
    service.deactivate(old.id)
    service.create(food())

    with pytest.raises(ConflictError):
        service.update(old.id, CategoryUpdate(is_active=True))


def test_update_of_foreign_category_is_not_found():
    session = make_session()
    alice = make_user(session, "alice")
    bob = make_user(session, "bob")
    category = CategoryService(session, alice.id).create(food())

    with pytest.raises(NotFoundError):
        CategoryService(session, bob.id).update(category.id, CategoryUpdate(name="Mine"))
    with pytest.raises(NotFoundError):
        CategoryService(session, alice.id).update(999, CategoryUpdate(name="Missing"))


def test_deactivate_unused_category():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    category = service.create(food())

    result = service.deactivate(category.id)

    assert result.was_in_use is False
    assert result.category.is_active is False
    assert session.get(Category, category.id) is not None


def test_deactivate_used_category_keeps_transaction_reference():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    category = service.create(food())
    expenses = TransactionService(session, user.id, TransactionType.expense)
    txn = expenses.create(
        TransactionIn(amount="12.50", date=date(2024, 1, 5), category_id=category.id)
    )

    result = service.deactivate(category.id)

    assert result.was_in_use is True
    reloaded = expenses.get(txn.id)
    assert reloaded.category_id == category.id
    assert reloaded.category.name == "Food"
    assert reloaded.category.is_active is False


def test_deactivate_twice_raises_already_inactive():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    category = service.create(food())
    service.deactivate(category.id)

    with pytest.raises(AlreadyInactiveError):
        service.deactivate(category.id)


def test_deactivate_foreign_category_is_not_found():
    session = make_session()
    alice = make_user(session, "alice")
    bob = make_user(session, "bob")
    category = CategoryService(session, alice.id).create(food())

    with pytest.raises(NotFoundError):
        CategoryService(session, bob.id).deactivate(category.id)
    assert session.get(Category, category.id).is_active is True


def test_deactivate_then_reactivate_restores_category():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    category = service.create(food())

    service.deactivate(category.id)
    restored = service.reactivate(category.id)

    assert restored.id == category.id
    assert restored.is_active is True
    assert (restored.name, restored.type, restored.icon, restored.color) == (
        "Food",
        TransactionType.expense,
        "🍽️",
        "#EF4444",
    )


def test_reactivate_conflicts_with_newer_active_duplicate():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    old = service.create(food())
    service.deactivate(old.id)
    service.create(food())

    with pytest.raises(ConflictError):
        service.reactivate(old.id)
    assert service.get(old.id).is_active is False


def test_reactivate_active_category_is_a_no_op():
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    category = service.create(food())

    assert service.reactivate(category.id).is_active is True


def test_store_index_rejects_second_active_duplicate():
    session = make_session()
    user = make_user(session)
    CategoryService(session, user.id).create(food())

    session.add(Category(user_id=user.id, name="Food", type=TransactionType.expense))
    with pytest.raises(IntegrityError):
        session.commit()


def test_store_conflict_is_translated_when_check_is_bypassed(monkeypatch):
    session = make_session()
    user = make_user(session)
    service = CategoryService(session, user.id)
    service.create(food())

    # Simulates a concurrent request that passed the application-level check.
    monkeypatch.setattr(service, "_find_active_duplicate", lambda *args, **kwargs: None)
    with pytest.raises(ConflictError):
        service.create(food())
    assert len(service.list_all()) == 1


def test_provision_seeds_default_categories_once():
    session = make_session()
    users = UserService(session)

    user, created = users.provision("auth|123", "me@example.com")
    again, created_again = users.provision("auth|123")

    assert created is True
    assert created_again is False
    assert again.id == user.id
    expected = sum(len(items) for items in DEFAULT_CATEGORIES.values())
    assert len(CategoryService(session, user.id).list_all()) == expected
    assert users.get_by_external_id("auth|123").email == "me@example.com"


def test_unknown_external_id_is_not_found():
    session = make_session()
    with pytest.raises(NotFoundError):
        UserService(session).get_by_external_id("nobody")
