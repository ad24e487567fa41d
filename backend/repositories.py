"""Persistence for users and the per-user resources.

Every category, currency and expense query filters on ``(id, user_id)``
together. A row owned by somebody else is reported exactly like a missing row.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from backend.database import categories, currencies, expenses, users
from backend.errors import ConflictError, NotFoundError

# SQLite integers are signed 64-bit.
MAX_OFFSET = 2**63 - 1

USER_COLUMNS = (
    users.c.id,
    users.c.email,
    users.c.name,
    users.c.provider,
    users.c.provider_account_id,
    users.c.email_verified,
    users.c.image,
    users.c.created_at,
    users.c.updated_at,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRepository:
    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def get(self, user_id: int) -> dict | None:
        row = self.conn.execute(
            select(*USER_COLUMNS).where(users.c.id == user_id)
        ).mappings().first()
        return dict(row) if row else None

    def get_credentials(self, email: str) -> dict | None:
        """Return the user row including the password hash."""
        row = self.conn.execute(
            select(users).where(users.c.email == email)
        ).mappings().first()
        return dict(row) if row else None

    def find_by_email(self, email: str) -> dict | None:
        row = self.conn.execute(
            select(*USER_COLUMNS).where(users.c.email == email)
        ).mappings().first()
        return dict(row) if row else None

    def find_by_provider(self, provider: str, provider_account_id: str) -> dict | None:
        row = self.conn.execute(
            select(*USER_COLUMNS).where(
                users.c.provider == provider,
                users.c.provider_account_id == provider_account_id,
            )
        ).mappings().first()
        return dict(row) if row else None

    def create(self, email: str, **fields: Any) -> dict:
        if self.find_by_email(email):
            raise ConflictError("User with this email already exists")
        stmt = insert(users).values(email=email, **fields).returning(*USER_COLUMNS)
        try:
            row = self.conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("User with this email already exists") from exc
        return dict(row)

    def link_provider(
        self,
        user_id: int,
        provider: str,
        provider_account_id: str,
        image: str | None = None,
    ) -> dict:
        values: dict[str, Any] = {
            "provider": provider,
            "provider_account_id": provider_account_id,
            "email_verified": True,
            "updated_at": utcnow(),
        }
        if image:
            values["image"] = image
        row = self.conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(**values)
            .returning(*USER_COLUMNS)
        ).mappings().first()
        if not row:
            raise NotFoundError("User not found")
        return dict(row)


class CategoryRepository:
    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def _select(self):
        expense_count = (
            select(func.count(expenses.c.id))
            .where(expenses.c.category_id == categories.c.id)
            .scalar_subquery()
            .label("expense_count")
        )
        return select(categories, expense_count)

    def _ensure_unique_name(self, user_id: int, name: str) -> None:
        duplicate = self.conn.execute(
            select(categories.c.id).where(
                categories.c.name == name, categories.c.user_id == user_id
            )
        ).first()
        if duplicate:
            raise ConflictError("Category with this name already exists")

    def create(self, user_id: int, fields: Mapping[str, Any]) -> dict:
        self._ensure_unique_name(user_id, fields["name"])
        stmt = (
            insert(categories)
            .values(
                user_id=user_id,
                name=fields["name"],
                description=fields.get("description"),
                color=fields.get("color"),
            )
            .returning(*categories.c)
        )
        try:
            row = self.conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Category with this name already exists") from exc
        return {**row, "expense_count": 0}

    def list_by_owner(self, user_id: int) -> list[dict]:
        rows = self.conn.execute(
            self._select()
            .where(categories.c.user_id == user_id)
            .order_by(categories.c.created_at.desc(), categories.c.id.desc())
        ).mappings().all()
        return [dict(row) for row in rows]

    def get(self, user_id: int, category_id: int) -> dict:
        row = self.conn.execute(
            self._select().where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise NotFoundError("Category not found")
        return dict(row)

    def exists(self, user_id: int, category_id: int) -> bool:
        row = self.conn.execute(
            select(categories.c.id).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).first()
        return row is not None

    def update(self, user_id: int, category_id: int, fields: Mapping[str, Any]) -> dict:
        existing = self.get(user_id, category_id)
        name = fields.get("name")
        if name is not None and name != existing["name"]:
            self._ensure_unique_name(user_id, name)

        values = {key: fields[key] for key in ("name", "description", "color") if key in fields}
        if not values:
            return existing
        stmt = (
            update(categories)
            .where(categories.c.id == category_id, categories.c.user_id == user_id)
            .values(**values, updated_at=utcnow())
        )
        try:
            self.conn.execute(stmt)
        except IntegrityError as exc:
            raise ConflictError("Category with this name already exists") from exc
        return self.get(user_id, category_id)

    def delete(self, user_id: int, category_id: int) -> None:
        existing = self.get(user_id, category_id)
        if existing["expense_count"] > 0:
            raise ConflictError(
                "Cannot delete category. It is being used by "
                f"{existing['expense_count']} expense(s).",
                count=existing["expense_count"],
                status_code=400,
            )
        try:
            self.conn.execute(
                categories.delete().where(
                    categories.c.id == category_id, categories.c.user_id == user_id
                )
            )
        except IntegrityError as exc:
            raise ConflictError("Category is in use", status_code=400) from exc


class CurrencyRepository:
    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def _ensure_unique_name(self, user_id: int, name: str) -> None:
        duplicate = self.conn.execute(
            select(currencies.c.id).where(
                currencies.c.name == name, currencies.c.user_id == user_id
            )
        ).first()
        if duplicate:
            raise ConflictError("Currency with this name already exists")

    def create(self, user_id: int, fields: Mapping[str, Any]) -> dict:
        self._ensure_unique_name(user_id, fields["name"])
        stmt = (
            insert(currencies)
            .values(
                user_id=user_id,
                name=fields["name"],
                usd_exchange_rate=fields["usd_exchange_rate"],
            )
            .returning(*currencies.c)
        )
        try:
            row = self.conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Currency with this name already exists") from exc
        return dict(row)

    def list_by_owner(self, user_id: int) -> list[dict]:
        rows = self.conn.execute(
            select(currencies)
            .where(currencies.c.user_id == user_id)
            .order_by(currencies.c.created_at.desc(), currencies.c.id.desc())
        ).mappings().all()
        return [dict(row) for row in rows]

    def get(self, user_id: int, currency_id: int) -> dict:
        row = self.conn.execute(
            select(currencies).where(
                currencies.c.id == currency_id, currencies.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise NotFoundError("Currency not found")
        return dict(row)

    def exists(self, user_id: int, currency_id: int) -> bool:
        row = self.conn.execute(
            select(currencies.c.id).where(
                currencies.c.id == currency_id, currencies.c.user_id == user_id
            )
        ).first()
        return row is not None

    def count_expenses(self, currency_id: int) -> int:
        return self.conn.execute(
            select(func.count(expenses.c.id)).where(
                expenses.c.currency_id == currency_id
            )
        ).scalar_one()

    def update(self, user_id: int, currency_id: int, fields: Mapping[str, Any]) -> dict:
        existing = self.get(user_id, currency_id)
        name = fields.get("name")
        if name is not None and name != existing["name"]:
            self._ensure_unique_name(user_id, name)

        values = {key: fields[key] for key in ("name", "usd_exchange_rate") if key in fields}
        if not values:
            return existing
        stmt = (
            update(currencies)
            .where(currencies.c.id == currency_id, currencies.c.user_id == user_id)
            .values(**values, updated_at=utcnow())
            .returning(*currencies.c)
        )
        try:
            row = self.conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Currency with this name already exists") from exc
        return dict(row)

    def delete(self, user_id: int, currency_id: int) -> None:
        self.get(user_id, currency_id)
        in_use = self.count_expenses(currency_id)
        if in_use > 0:
            raise ConflictError(
                f"Cannot delete currency. It is being used by {in_use} expense(s).",
                count=in_use,
                status_code=400,
            )
        try:
            self.conn.execute(
                currencies.delete().where(
                    currencies.c.id == currency_id, currencies.c.user_id == user_id
                )
            )
        except IntegrityError as exc:
            raise ConflictError("Currency is in use", status_code=400) from exc


class ExpenseRepository:
    def __init__(self, conn: Connection) -> None:
        self.conn = conn
        self.categories = CategoryRepository(conn)
        self.currencies = CurrencyRepository(conn)

    def _select(self):
        joined = expenses.join(categories, expenses.c.category_id == categories.c.id).join(
            currencies, expenses.c.currency_id == currencies.c.id
        )
        return select(
            expenses,
            categories.c.name.label("category_name"),
            categories.c.color.label("category_color"),
            currencies.c.name.label("currency_name"),
            currencies.c.usd_exchange_rate.label("currency_usd_exchange_rate"),
        ).select_from(joined)

    def _check_references(
        self, user_id: int, category_id: int | None, currency_id: int | None
    ) -> None:
        if category_id is not None and not self.categories.exists(user_id, category_id):
            raise NotFoundError("Category not found")
        if currency_id is not None and not self.currencies.exists(user_id, currency_id):
            raise NotFoundError("Currency not found")

    def _filters(
        self,
        user_id: int,
        category_id: int | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list:
        conditions = [expenses.c.user_id == user_id]
        if category_id is not None:
            conditions.append(expenses.c.category_id == category_id)
        if start_date is not None:
            conditions.append(expenses.c.date >= start_date)
        if end_date is not None:
            conditions.append(expenses.c.date <= end_date)
        return conditions

    def create(self, user_id: int, fields: Mapping[str, Any]) -> dict:
        self._check_references(user_id, fields["category_id"], fields["currency_id"])
        row = self.conn.execute(
            insert(expenses)
            .values(
                user_id=user_id,
                amount=fields["amount"],
                description=fields.get("description"),
                date=fields.get("date") or utcnow(),
                category_id=fields["category_id"],
                currency_id=fields["currency_id"],
            )
            .returning(expenses.c.id)
        ).first()
        return self.get(user_id, row.id)

    def list_by_owner(
        self,
        user_id: int,
        *,
        category_id: int | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[dict], int]:
        conditions = self._filters(user_id, category_id, start_date, end_date)
        total = self.conn.execute(
            select(func.count(expenses.c.id)).where(and_(*conditions))
        ).scalar_one()
        rows = self.conn.execute(
            self._select()
            .where(*conditions)
            .order_by(expenses.c.date.desc(), expenses.c.id.desc())
            .offset(min((page - 1) * limit, MAX_OFFSET))
            .limit(limit)
        ).mappings().all()
        return [dict(row) for row in rows], total

    def get(self, user_id: int, expense_id: int) -> dict:
        row = self.conn.execute(
            self._select().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        ).mappings().first()
        if not row:
            raise NotFoundError("Expense not found")
        return dict(row)

    def update(self, user_id: int, expense_id: int, fields: Mapping[str, Any]) -> dict:
        self.get(user_id, expense_id)
        self._check_references(user_id, fields.get("category_id"), fields.get("currency_id"))

        columns = ("amount", "description", "date", "category_id", "currency_id")
        values = {key: fields[key] for key in columns if key in fields}
        if values:
            self.conn.execute(
                update(expenses)
                .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
                .values(**values, updated_at=utcnow())
            )
        return self.get(user_id, expense_id)

    def delete(self, user_id: int, expense_id: int) -> None:
        result = self.conn.execute(
            expenses.delete().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        )
        if result.rowcount == 0:
            raise NotFoundError("Expense not found")
