import unittest
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

from ledger_backend.errors import NotFound, StoreFailure, ValidationFailure
from ledger_backend.models import BudgetLimit, Goal, MonetaryEntry, RecurrenceRule
from ledger_backend.store import build_store


class RepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = build_store("sqlite://")
        self.store.init_db()

    def test_transaction_round_trip_keeps_recurrence_and_tags(self) -> None:
        created = self.store.transactions.create(
            MonetaryEntry(
                owner_id=1,
                kind="expense",
                amount=Decimal("100"),
                currency="EUR",
                category="Food",
                normalized_amount=Decimal("108.00"),
                timestamp=datetime(2024, 1, 15, 8, 30),
                tags=("groceries", "weekly"),
                recurrence=RecurrenceRule(
                    pattern="monthly",
                    last_materialized=datetime(2024, 1, 15, 8, 30),
                    end_date=datetime(2024, 12, 31),
                ),
            )
        )

        loaded = self.store.transactions.find_by_id_and_owner(created.id, 1)

        self.assertIsNotNone(created.id)
        self.assertEqual(loaded.amount, Decimal("100"))
        self.assertEqual(loaded.normalized_amount, Decimal("108"))
        self.assertEqual(loaded.tags, ("groceries", "weekly"))
        self.assertEqual(loaded.recurrence.pattern, "monthly")
        self.assertEqual(loaded.recurrence.end_date, datetime(2024, 12, 31))

    def test_lookups_are_owner_scoped(self) -> None:
        goal = self.store.goals.create(Goal(title="Emergency fund", owner_id=1))

        with self.assertRaises(NotFound):
            self.store.goals.find_by_id_and_owner(goal.id, 2)
        with self.assertRaises(NotFound):
            self.store.goals.update_by_id_and_owner(goal.id, 2, replace(goal, completed=True))
        with self.assertRaises(NotFound):
            self.store.goals.delete_by_id_and_owner(goal.id, 2)
        self.assertEqual(self.store.goals.find_by_owner(2), [])

    def test_update_and_delete(self) -> None:
        goal = self.store.goals.create(
            Goal(title="Trip", owner_id=1, target_date=date(2025, 6, 1))
        )

        updated = self.store.goals.update_by_id_and_owner(goal.id, 1, replace(goal, completed=True))
        self.store.goals.delete_by_id_and_owner(goal.id, 1)

        self.assertTrue(updated.completed)
        self.assertEqual(updated.target_date, date(2025, 6, 1))
        self.assertEqual(self.store.goals.find_by_owner(1), [])

    def test_one_budget_per_owner_and_category(self) -> None:
        self.store.budgets.create(BudgetLimit(category="Food", limit=Decimal("500"), owner_id=1))
        self.store.budgets.create(BudgetLimit(category="Food", limit=Decimal("300"), owner_id=2))

        with self.assertRaises(ValidationFailure):
            self.store.budgets.create(BudgetLimit(category="Food", limit=Decimal("200"), owner_id=1))

    def test_find_by_owner_filters_and_rejects_unknown_fields(self) -> None:
        self.store.budgets.create(BudgetLimit(category="Food", limit=Decimal("500"), owner_id=1))
        self.store.budgets.create(BudgetLimit(category="Rent", limit=Decimal("900"), owner_id=1))

        matches = self.store.budgets.find_by_owner(1, category="Rent")

        self.assertEqual([limit.category for limit in matches], ["Rent"])
        with self.assertRaises(ValidationFailure):
            self.store.budgets.find_by_owner(1, colour="red")

    def test_amounts_round_trip_exactly(self) -> None:
        created = self.store.transactions.create(
            MonetaryEntry(
                owner_id=1,
                kind="expense",
                amount=Decimal("10.1234567"),
                currency="USD",
                category="Food",
                normalized_amount=Decimal("10.1234567"),
                timestamp=datetime(2024, 5, 1),
            )
        )
        limit = self.store.budgets.create(
            BudgetLimit(category="Food", limit=Decimal("99.995"), owner_id=1)
        )

        loaded = self.store.transactions.find_by_id_and_owner(created.id, 1)

        self.assertEqual(str(loaded.amount), "10.1234567")
        self.assertEqual(str(loaded.normalized_amount), "10.1234567")
        self.assertEqual(str(self.store.budgets.find_by_owner(1)[0].limit), "99.995")
        self.assertEqual(limit.limit, Decimal("99.995"))

    def test_post_occurrences_rolls_back_on_failure(self) -> None:
        template = self.store.transactions.create(
            MonetaryEntry(
                owner_id=1,
                kind="expense",
                amount=Decimal("5"),
                currency="USD",
                category="Coffee",
                normalized_amount=Decimal("5"),
                timestamp=datetime(2024, 5, 1),
                recurrence=RecurrenceRule(pattern="daily", last_materialized=datetime(2024, 5, 1)),
            )
        )
        occurrences = [
            replace(
                template,
                id=None,
                timestamp=datetime(2024, 5, day),
                source_entry_id=template.id,
                recurrence=None,
            )
            for day in (2, 3)
        ]
        advanced = replace(
            template,
            recurrence=RecurrenceRule(pattern="daily", last_materialized=datetime(2024, 5, 3)),
        )
        insert = self.store.transactions.insert
        inserted = []

        def fail_second(conn, record):
            inserted.append(record)
            if len(inserted) == 2:
                raise SQLAlchemyError("disk full")
            return insert(conn, record)

        with patch.object(self.store.transactions, "insert", side_effect=fail_second):
            with self.assertRaises(StoreFailure):
                self.store.post_occurrences(advanced, occurrences)

        stored = self.store.transactions.find_by_owner(1)
        self.assertEqual([entry.id for entry in stored], [template.id])
        self.assertEqual(stored[0].recurrence.last_materialized, datetime(2024, 5, 1))

        saved = self.store.post_occurrences(advanced, occurrences)
        self.assertEqual([entry.timestamp.day for entry in saved], [2, 3])
        reloaded = self.store.transactions.find_by_id_and_owner(template.id, 1)
        self.assertEqual(reloaded.recurrence.last_materialized, datetime(2024, 5, 3))


if __name__ == "__main__":
    unittest.main()
