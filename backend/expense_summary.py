from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from backend.database import categories, expenses

ZERO = Decimal("0")


@dataclass(frozen=True)
class CategoryTotal:
    category_id: int
    total_amount: Decimal
    count: int
    category: Optional[dict] = None


@dataclass(frozen=True)
class ExpenseSummary:
    total_amount: Decimal = ZERO
    total_count: int = 0
    per_category: list[CategoryTotal] = field(default_factory=list)


def summarize(
    conn: Connection,
    user_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> ExpenseSummary:
    """Total a user's expenses, overall and per category, within inclusive bounds.

    Categories without matching expenses in the window are left out.
    """
    if start_date is not None and end_date is not None and start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")

    conditions = [expenses.c.user_id == user_id]
    if start_date is not None:
        conditions.append(expenses.c.date >= start_date)
    if end_date is not None:
        conditions.append(expenses.c.date <= end_date)

    total_row = conn.execute(
        select(
            func.coalesce(func.sum(expenses.c.amount), 0).label("total_amount"),
            func.count(expenses.c.id).label("total_count"),
        ).where(*conditions)
    ).mappings().one()

    group_rows = conn.execute(
        select(
            expenses.c.category_id,
            func.coalesce(func.sum(expenses.c.amount), 0).label("total_amount"),
            func.count(expenses.c.id).label("count"),
        )
        .where(*conditions)
        .group_by(expenses.c.category_id)
        .order_by(expenses.c.category_id.asc())
    ).mappings().all()

    category_ids = [row["category_id"] for row in group_rows]
    category_map: dict[int, dict] = {}
    if category_ids:
        category_rows = conn.execute(
            select(categories.c.id, categories.c.name, categories.c.color).where(
                categories.c.id.in_(category_ids), categories.c.user_id == user_id
            )
        ).mappings().all()
        category_map = {row["id"]: dict(row) for row in category_rows}

    return ExpenseSummary(
        total_amount=_coerce_amount(total_row["total_amount"]),
        total_count=int(total_row["total_count"] or 0),
        per_category=[
            CategoryTotal(
                category_id=row["category_id"],
                total_amount=_coerce_amount(row["total_amount"]),
                count=int(row["count"]),
                category=category_map.get(row["category_id"]),
            )
            for row in group_rows
        ],
    )


def _coerce_amount(amount) -> Decimal:
    if amount is None:
        return ZERO
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
