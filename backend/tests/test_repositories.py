import unittest
from datetime import datetime
from decimal import Decimal

from backend.errors import ConflictError, NotFoundError
from backend.repositories import (
    CategoryRepository,
    CurrencyRepository,
    ExpenseRepository,
    UserRepository,
    utcnow,
)
from backend.tests.support import add_user, make_engine


class RepositoryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.conn = self.engine.connect()
        self.transaction = self.conn.begin()
        self.alice = add_user(self.conn, "alice@example.com")
        self.bob = add_user(self.conn, "bob@example.com")
        self.categories = CategoryRepository(self.conn)
        self.currencies = CurrencyRepository(self.conn)
        self.expenses = ExpenseRepository(self.conn)

    def tearDown(self) -> None:
        self.transaction.rollback()
        self.conn.close()
        self.engine.dispose()

    def add_expense(self, user_id: int, category_id: int, currency_id: int, **fields) -> dict:
        values = {"amount": Decimal("10"), "category_id": category_id, "currency_id": currency_id}
        values.update(fields)
        return self.expenses.create(user_id, values)


class CategoryRepositoryTests(RepositoryTestCase):
    def test_create_and_get(self) -> None:
        created = self.categories.create(self.alice, {"name": "Food", "color": "#FF5733"})

        fetched = self.categories.get(self.alice, created["id"])

        self.assertEqual(fetched["name"], "Food")
        self.assertEqual(fetched["color"], "#FF5733")
        self.assertEqual(fetched["expense_count"], 0)

    def test_duplicate_name_for_same_user_conflicts(self) -> None:
        self.categories.create(self.alice, {"name": "Food"})

        with self.assertRaises(ConflictError):
            self.categories.create(self.alice, {"name": "Food"})

    def test_same_name_for_other_user_is_allowed(self) -> None:
        self.categories.create(self.alice, {"name": "Food"})

        created = self.categories.create(self.bob, {"name": "Food"})

        self.assertEqual(created["user_id"], self.bob)

    def test_other_users_category_is_not_found(self) -> None:
        created = self.categories.create(self.alice, {"name": "Food"})

        with self.assertRaises(NotFoundError):
            self.categories.get(self.bob, created["id"])
        with self.assertRaises(NotFoundError):
            self.categories.update(self.bob, created["id"], {"name": "Mine"})
        with self.assertRaises(NotFoundError):
            self.categories.delete(self.bob, created["id"])

        self.assertEqual(self.categories.get(self.alice, created["id"])["name"], "Food")

    def test_update_to_existing_name_conflicts(self) -> None:
        self.categories.create(self.alice, {"name": "Food"})
        travel = self.categories.create(self.alice, {"name": "Travel"})

        with self.assertRaises(ConflictError):
            self.categories.update(self.alice, travel["id"], {"name": "Food"})

    def test_update_applies_only_supplied_fields(self) -> None:
        created = self.categories.create(
            self.alice, {"name": "Food", "description": "Groceries", "color": "#00FF00"}
        )

        updated = self.categories.update(self.alice, created["id"], {"color": None})

        self.assertEqual(updated["name"], "Food")
        self.assertEqual(updated["description"], "Groceries")
        self.assertIsNone(updated["color"])

    def test_list_is_scoped_to_owner(self) -> None:
        self.categories.create(self.alice, {"name": "Food"})
        self.categories.create(self.alice, {"name": "Travel"})
        self.categories.create(self.bob, {"name": "Rent"})

        names = {row["name"] for row in self.categories.list_by_owner(self.alice)}

        self.assertEqual(names, {"Food", "Travel"})

    def test_delete_blocked_while_expenses_reference_category(self) -> None:
        category = self.categories.create(self.alice, {"name": "Food"})
        currency = self.currencies.create(
            self.alice, {"name": "USD", "usd_exchange_rate": Decimal("1")}
        )
        self.add_expense(self.alice, category["id"], currency["id"])

        with self.assertRaises(ConflictError) as ctx:
            self.categories.delete(self.alice, category["id"])

        self.assertEqual(ctx.exception.count, 1)
        self.assertEqual(self.categories.get(self.alice, category["id"])["expense_count"], 1)


class CurrencyRepositoryTests(RepositoryTestCase):
    def test_duplicate_name_conflicts(self) -> None:
        self.currencies.create(self.alice, {"name": "EUR", "usd_exchange_rate": Decimal("0.9")})

        with self.assertRaises(ConflictError):
            self.currencies.create(
                self.alice, {"name": "EUR", "usd_exchange_rate": Decimal("0.8")}
            )

    def test_rename_to_existing_name_conflicts(self) -> None:
        self.currencies.create(self.alice, {"name": "EUR", "usd_exchange_rate": Decimal("0.9")})
        pound = self.currencies.create(
            self.alice, {"name": "GBP", "usd_exchange_rate": Decimal("1.25")}
        )

        with self.assertRaises(ConflictError) as ctx:
            self.currencies.update(self.alice, pound["id"], {"name": "EUR"})

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(self.currencies.get(self.alice, pound["id"])["name"], "GBP")

    def test_rename_to_other_users_name_is_allowed(self) -> None:
        self.currencies.create(self.bob, {"name": "EUR", "usd_exchange_rate": Decimal("0.9")})
        pound = self.currencies.create(
            self.alice, {"name": "GBP", "usd_exchange_rate": Decimal("1.25")}
        )

        updated = self.currencies.update(self.alice, pound["id"], {"name": "EUR"})

        self.assertEqual(updated["name"], "EUR")

    def test_update_rate(self) -> None:
        created = self.currencies.create(
            self.alice, {"name": "EUR", "usd_exchange_rate": Decimal("0.9")}
        )

        updated = self.currencies.update(
            self.alice, created["id"], {"usd_exchange_rate": Decimal("0.95")}
        )

        self.assertEqual(updated["name"], "EUR")
        self.assertEqual(updated["usd_exchange_rate"], Decimal("0.95"))

    def test_delete_blocked_while_in_use(self) -> None:
        category = self.categories.create(self.alice, {"name": "Food"})
        currency = self.currencies.create(
            self.alice, {"name": "USD", "usd_exchange_rate": Decimal("1")}
        )
        self.add_expense(self.alice, category["id"], currency["id"])
        self.add_expense(self.alice, category["id"], currency["id"])

        with self.assertRaises(ConflictError) as ctx:
            self.currencies.delete(self.alice, currency["id"])

        self.assertEqual(ctx.exception.count, 2)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.currencies.get(self.alice, currency["id"])["name"], "USD")

    def test_delete_unused_currency(self) -> None:
        currency = self.currencies.create(
            self.alice, {"name": "USD", "usd_exchange_rate": Decimal("1")}
        )

        self.currencies.delete(self.alice, currency["id"])

        with self.assertRaises(NotFoundError):
            self.currencies.get(self.alice, currency["id"])

    def test_other_users_currency_cannot_be_deleted(self) -> None:
        currency = self.currencies.create(
            self.alice, {"name": "USD", "usd_exchange_rate": Decimal("1")}
        )

        with self.assertRaises(NotFoundError):
            self.currencies.delete(self.bob, currency["id"])


class ExpenseRepositoryTests(RepositoryTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.food = self.categories.create(self.alice, {"name": "Food", "color": "#FF0000"})
        self.usd = self.currencies.create(
            self.alice, {"name": "USD", "usd_exchange_rate": Decimal("1")}
        )
        self.bob_category = self.categories.create(self.bob, {"name": "Food"})
        self.bob_currency = self.currencies.create(
            self.bob, {"name": "USD", "usd_exchange_rate": Decimal("1")}
        )

    def test_create_defaults_date_to_now(self) -> None:
        before = utcnow()
        expense = self.add_expense(self.alice, self.food["id"], self.usd["id"], date=None)
        after = utcnow()

        self.assertTrue(before <= expense["date"] <= after)
        self.assertEqual(expense["category_name"], "Food")
        self.assertEqual(expense["currency_name"], "USD")

    def test_category_is_checked_before_currency(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.add_expense(self.alice, self.bob_category["id"], self.bob_currency["id"])

        self.assertEqual(ctx.exception.message, "Category not found")

    def test_foreign_currency_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.add_expense(self.alice, self.food["id"], self.bob_currency["id"])

        self.assertEqual(ctx.exception.message, "Currency not found")

    def test_update_rechecks_references(self) -> None:
        expense = self.add_expense(self.alice, self.food["id"], self.usd["id"])

        with self.assertRaises(NotFoundError):
            self.expenses.update(
                self.alice, expense["id"], {"currency_id": self.bob_currency["id"]}
            )

    def test_update_clears_description(self) -> None:
        expense = self.add_expense(
            self.alice, self.food["id"], self.usd["id"], description="Lunch"
        )

        updated = self.expenses.update(self.alice, expense["id"], {"description": None})

        self.assertIsNone(updated["description"])
        self.assertEqual(updated["amount"], Decimal("10"))

    def test_other_users_expense_is_not_found(self) -> None:
        expense = self.add_expense(self.alice, self.food["id"], self.usd["id"])

        with self.assertRaises(NotFoundError):
            self.expenses.get(self.bob, expense["id"])
        with self.assertRaises(NotFoundError):
            self.expenses.update(self.bob, expense["id"], {"amount": Decimal("1")})
        with self.assertRaises(NotFoundError):
            self.expenses.delete(self.bob, expense["id"])

    def test_list_filters_and_paginates(self) -> None:
        travel = self.categories.create(self.alice, {"name": "Travel"})
        for day in range(1, 6):
            self.add_expense(
                self.alice, self.food["id"], self.usd["id"], date=datetime(2024, 5, day)
            )
        self.add_expense(self.alice, travel["id"], self.usd["id"], date=datetime(2024, 5, 3))
        self.add_expense(self.bob, self.bob_category["id"], self.bob_currency["id"])

        rows, total = self.expenses.list_by_owner(
            self.alice,
            category_id=self.food["id"],
            start_date=datetime(2024, 5, 2),
            end_date=datetime(2024, 5, 4, 23, 59, 59),
            page=1,
            limit=2,
        )

        self.assertEqual(total, 3)
        self.assertEqual([row["date"].day for row in rows], [4, 3])

        second_page, _ = self.expenses.list_by_owner(
            self.alice,
            category_id=self.food["id"],
            start_date=datetime(2024, 5, 2),
            end_date=datetime(2024, 5, 4, 23, 59, 59),
            page=2,
            limit=2,
        )
        self.assertEqual([row["date"].day for row in second_page], [2])

    def test_page_far_past_the_end_is_empty(self) -> None:
        self.add_expense(self.alice, self.food["id"], self.usd["id"])

        rows, total = self.expenses.list_by_owner(self.alice, page=2**62, limit=100)

        self.assertEqual(rows, [])
        self.assertEqual(total, 1)


class UserRepositoryTests(RepositoryTestCase):
    def test_duplicate_email_conflicts(self) -> None:
        users = UserRepository(self.conn)

        with self.assertRaises(ConflictError):
            users.create("alice@example.com", name="Again")

    def test_link_provider_keeps_existing_image(self) -> None:
        users = UserRepository(self.conn)
        created = users.create("carol@example.com", image="https://img.test/carol.png")

        linked = users.link_provider(created["id"], "google", "g-1")

        self.assertEqual(linked["image"], "https://img.test/carol.png")
        self.assertTrue(linked["email_verified"])
        self.assertEqual(users.find_by_provider("google", "g-1")["id"], created["id"])


if __name__ == "__main__":
    unittest.main()
