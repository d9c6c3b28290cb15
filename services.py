from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from models import (
    CATEGORY_NAME_MAX_LENGTH,
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_CATEGORY_ICON,
    Category,
    Transaction,
    TransactionType,
    User,
)
from money import parse_amount
from periods import DateRange
from schemas import CategoryIn, CategoryUpdate, TransactionIn, TransactionUpdate


logger = logging.getLogger(__name__)


class InvalidInputError(ValueError):
    pass


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class AlreadyInactiveError(ValueError):
    pass


DEFAULT_CATEGORIES: dict[TransactionType, list[tuple[str, str, str]]] = {
    TransactionType.income: [
        ("Salary", "💼", "#10B981"),
        ("Freelance", "💻", "#3B82F6"),
        ("Investments", "📈", "#8B5CF6"),
        ("Other", "💰", "#F59E0B"),
    ],
    TransactionType.expense: [
        ("Food", "🍽️", "#EF4444"),
        ("Transport", "🚗", "#F97316"),
        ("Entertainment", "🎬", "#EC4899"),
        ("Shopping", "🛒", "#8B5CF6"),
        ("Health", "🏥", "#06B6D4"),
        ("Utilities", "⚡", "#84CC16"),
        ("Education", "📚", "#3B82F6"),
        ("Other", "📦", "#6B7280"),
    ],
}


# Alphabetical by type value regardless of how the backend stores the enum.
TYPE_SORT_KEY = case((Category.type == TransactionType.expense, 0), else_=1)


def _clean_category_name(name: Optional[str]) -> str:
    clean_name = (name or "").strip()
    if not clean_name:
        raise InvalidInputError("Category name cannot be empty")
    if len(clean_name) > CATEGORY_NAME_MAX_LENGTH:
        raise InvalidInputError(
            f"Category name cannot exceed {CATEGORY_NAME_MAX_LENGTH} characters"
        )
    return clean_name


def _coerce_type(value: object) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise InvalidInputError("Category type must be 'income' or 'expense'") from exc


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_external_id(self, external_id: str) -> User:
        user = self.session.scalar(select(User).where(User.external_id == external_id))
        if not user:
            raise NotFoundError("User not found")
        return user

    def provision(
        self, external_id: str, email: Optional[str] = None
    ) -> tuple[User, bool]:
        """Return the local user for an identity, creating it on first sight.

        A freshly created user gets the default income and expense categories.
        """
        existing = self.session.scalar(
            select(User).where(User.external_id == external_id)
        )
        if existing:
            return existing, False

        user = User(external_id=external_id, email=email)
        self.session.add(user)
        try:
            self.session.flush()
        except IntegrityError:
            # Another request provisioned the same identity first.
            self.session.rollback()
            return self.get_by_external_id(external_id), False

        for txn_type, defaults in DEFAULT_CATEGORIES.items():
            for name, icon, color in defaults:
                self.session.add(
                    Category(
                        user_id=user.id,
                        name=name,
                        type=txn_type,
                        icon=icon,
                        color=color,
                        is_active=True,
                    )
                )
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_provisioned: id={user.id} external_id={external_id}")
        return user, True


@dataclass(frozen=True)
class Deactivation:
    category: Category
    was_in_use: bool


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(
        self,
        type: Optional[TransactionType] = None,
        include_inactive: bool = False,
    ) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(TYPE_SORT_KEY, Category.name, Category.id)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _find_active_duplicate(
        self,
        name: str,
        type: TransactionType,
        exclude_id: Optional[int] = None,
    ) -> Optional[Category]:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type == type,
            Category.is_active.is_(True),
            Category.name == name,
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalars(stmt).first()

    def _commit(self, category: Category) -> Category:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "An active category with this name already exists for this type"
            ) from exc
        self.session.refresh(category)
        return category

    def create(self, data: CategoryIn) -> Category:
        name = _clean_category_name(data.name)
        txn_type = _coerce_type(data.type)
        if self._find_active_duplicate(name, txn_type):
            raise ConflictError(
                "An active category with this name already exists for this type"
            )
        category = Category(
            user_id=self.user_id,
            name=name,
            type=txn_type,
            icon=data.icon or DEFAULT_CATEGORY_ICON,
            color=data.color or DEFAULT_CATEGORY_COLOR,
            is_active=True,
        )
        self.session.add(category)
        category = self._commit(category)
        logger.info(
            f"category_created: id={category.id} user_id={self.user_id} "
            f"type={category.type.value}"
        )
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)

        name = category.name
        txn_type = category.type
        is_active = category.is_active
        if "name" in changes:
            name = _clean_category_name(changes["name"])
        if "type" in changes:
            txn_type = _coerce_type(changes["type"])
        if "is_active" in changes:
            if changes["is_active"] is None:
                raise InvalidInputError("is_active must be true or false")
            is_active = bool(changes["is_active"])

        identity_changed = name != category.name or txn_type != category.type
        reactivating = is_active and not category.is_active
        if is_active and (identity_changed or reactivating):
            if self._find_active_duplicate(name, txn_type, exclude_id=category.id):
                raise ConflictError(
                    "An active category with this name already exists for this type"
                )

        category.name = name
        category.type = txn_type
        category.is_active = is_active
        if changes.get("icon") is not None:
            category.icon = changes["icon"]
        if changes.get("color") is not None:
            category.color = changes["color"]
        return self._commit(category)

    def is_in_use(self, category_id: int) -> bool:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == category_id,
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def deactivate(self, category_id: int) -> Deactivation:
        """Soft delete a category.

        Categories are never removed so that historical transactions keep
        their reference; usage only affects the returned flag.
        """
        category = self.get(category_id)
        if not category.is_active:
            raise AlreadyInactiveError("Category is already inactive")
        was_in_use = self.is_in_use(category.id)
        category.is_active = False
        self.session.commit()
        self.session.refresh(category)
        logger.info(
            f"category_deactivated: id={category.id} user_id={self.user_id} "
            f"was_in_use={was_in_use}"
        )
        return Deactivation(category=category, was_in_use=was_in_use)

    def reactivate(self, category_id: int) -> Category:
        category = self.get(category_id)
        if category.is_active:
            return category
        if self._find_active_duplicate(
            category.name, category.type, exclude_id=category.id
        ):
            raise ConflictError(
                "An active category with this name already exists for this type"
            )
        category.is_active = True
        category = self._commit(category)
        logger.info(
            f"category_reactivated: id={category.id} user_id={self.user_id}"
        )
        return category


class TransactionService:
    def __init__(
        self, session: Session, user_id: int, type: TransactionType
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.type = TransactionType(type)

    def _active_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise InvalidInputError("Category not found")
        if category.type != self.type:
            raise InvalidInputError("Category type mismatch")
        if not category.is_active:
            raise InvalidInputError("Category is inactive")
        return category

    @staticmethod
    def _amount_cents(value: object) -> int:
        try:
            return parse_amount(value)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = self._amount_cents(data.amount)
        self._active_category(data.category_id)

        txn = Transaction(
            user_id=self.user_id,
            type=self.type,
            amount_cents=amount_cents,
            description=data.description,
            date=data.date,
            category_id=data.category_id,
            notes=data.notes or None,
        )
        self.session.add(txn)
        self.session.commit()
        logger.info(
            f"transaction_created: id={txn.id} user_id={self.user_id} "
            f"type={self.type.value}"
        )
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == self.type,
                Transaction.id == transaction_id,
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(self, date_range: Optional[DateRange] = None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == self.type,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if date_range is not None:
            stmt = stmt.where(Transaction.date.between(date_range.start, date_range.end))
        return list(self.session.scalars(stmt).all())

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)

        for required in ("amount", "date", "category_id"):
            if required in changes and changes[required] is None:
                raise InvalidInputError(f"{required} cannot be empty")
        if "amount" in changes:
            txn.amount_cents = self._amount_cents(changes["amount"])
        if "category_id" in changes and changes["category_id"] != txn.category_id:
            txn.category_id = self._active_category(changes["category_id"]).id
        if "date" in changes:
            txn.date = changes["date"]
        if "description" in changes:
            txn.description = changes["description"]
        if "notes" in changes:
            txn.notes = changes["notes"] or None
        txn.updated_at = datetime.utcnow()

        self.session.commit()
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(
            f"transaction_deleted: id={transaction_id} user_id={self.user_id} "
            f"type={self.type.value}"
        )


@dataclass(frozen=True)
class CategoryRef:
    id: Optional[int]
    name: str
    icon: str
    color: str
    is_active: bool = True


UNCATEGORIZED = CategoryRef(
    id=None,
    name="Uncategorized",
    icon=DEFAULT_CATEGORY_ICON,
    color=DEFAULT_CATEGORY_COLOR,
)


@dataclass(frozen=True)
class UnifiedTransaction:
    id: int
    type: TransactionType
    amount_cents: int
    description: Optional[str]
    date: date
    category: CategoryRef
    notes: Optional[str]


@dataclass
class Summary:
    date_range: Optional[DateRange]
    transactions: list[UnifiedTransaction] = field(default_factory=list)
    total_income_cents: int = 0
    total_expense_cents: int = 0
    expenses_by_category: dict[str, int] = field(default_factory=dict)

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


def unify(txn: Transaction) -> UnifiedTransaction:
    if txn.category is not None:
        category = CategoryRef(
            id=txn.category.id,
            name=txn.category.name,
            icon=txn.category.icon,
            color=txn.category.color,
            is_active=txn.category.is_active,
        )
    else:
        category = UNCATEGORIZED
    return UnifiedTransaction(
        id=txn.id,
        type=txn.type,
        amount_cents=txn.amount_cents,
        description=txn.description,
        date=txn.date,
        category=category,
        notes=txn.notes,
    )


class SummaryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summarize(self, date_range: Optional[DateRange] = None) -> Summary:
        incomes = TransactionService(
            self.session, self.user_id, TransactionType.income
        ).list(date_range)
        expenses = TransactionService(
            self.session, self.user_id, TransactionType.expense
        ).list(date_range)

        merged = [unify(txn) for txn in incomes] + [unify(txn) for txn in expenses]
        # sorted() is stable, so same-day rows keep their fetch order.
        merged = sorted(merged, key=lambda item: item.date, reverse=True)

        summary = Summary(date_range=date_range, transactions=merged)
        for item in merged:
            if item.type == TransactionType.income:
                summary.total_income_cents += item.amount_cents
                continue
            summary.total_expense_cents += item.amount_cents
            name = item.category.name
            summary.expenses_by_category[name] = (
                summary.expenses_by_category.get(name, 0) + item.amount_cents
            )
        return summary
