import unittest
from datetime import datetime
from decimal import Decimal

from ledger_backend.errors import ValidationFailure
from ledger_backend.models import MonetaryEntry, RecurrenceRule
from ledger_backend.recurring_expansion import (
    is_exhausted,
    iter_due_dates,
    materialize_due,
    next_occurrence,
)


def recurring_entry(
    pattern: str,
    timestamp: datetime,
    last_materialized: datetime | None = None,
    end_date: datetime | None = None,
) -> MonetaryEntry:
    return MonetaryEntry(
        id=7,
        owner_id=1,
        kind="expense",
        amount=Decimal("50"),
        currency="USD",
        category="Food",
        normalized_amount=Decimal("50"),
        timestamp=timestamp,
        recurrence=RecurrenceRule(
            pattern=pattern,
            last_materialized=last_materialized or timestamp,
            end_date=end_date,
        ),
    )


class RecurringExpansionTests(unittest.TestCase):
    def test_monthly_expense_materializes_until_as_of(self) -> None:
        entry = recurring_entry("monthly", datetime(2024, 1, 15))

        materialized = materialize_due(entry, datetime(2024, 4, 1))

        self.assertEqual(
            [item.timestamp for item in materialized],
            [datetime(2024, 2, 15), datetime(2024, 3, 15)],
        )
        self.assertEqual(entry.recurrence.last_materialized, datetime(2024, 3, 15))
        for item in materialized:
            self.assertEqual(item.amount, Decimal("50"))
            self.assertEqual(item.currency, "USD")
            self.assertEqual(item.category, "Food")
            self.assertEqual(item.kind, "expense")
            self.assertIsNone(item.id)
            self.assertIsNone(item.recurrence)
            self.assertEqual(item.source_entry_id, 7)

    def test_second_call_without_new_interval_is_empty(self) -> None:
        entry = recurring_entry("weekly", datetime(2024, 1, 1))

        first = materialize_due(entry, datetime(2024, 1, 20))
        second = materialize_due(entry, datetime(2024, 1, 20))

        self.assertEqual(len(first), 2)
        self.assertEqual(second, [])

    def test_monthly_clamps_to_end_of_february(self) -> None:
        leap = recurring_entry("monthly", datetime(2024, 1, 31))
        common = recurring_entry("monthly", datetime(2023, 1, 31))

        self.assertEqual(next_occurrence(leap), datetime(2024, 2, 29))
        self.assertEqual(next_occurrence(common), datetime(2023, 2, 28))

    def test_monthly_clamping_does_not_drift(self) -> None:
        entry = recurring_entry("monthly", datetime(2024, 1, 31))

        dates = list(iter_due_dates(entry, datetime(2024, 5, 31)))

        self.assertEqual(
            dates,
            [
                datetime(2024, 2, 29),
                datetime(2024, 3, 31),
                datetime(2024, 4, 30),
                datetime(2024, 5, 31),
            ],
        )

    def test_daily_pattern_respects_exclusive_end_date(self) -> None:
        entry = recurring_entry("daily", datetime(2024, 3, 1), end_date=datetime(2024, 3, 4))

        materialized = materialize_due(entry, datetime(2024, 3, 10))

        self.assertEqual(
            [item.timestamp for item in materialized],
            [datetime(2024, 3, 2), datetime(2024, 3, 3)],
        )
        self.assertTrue(is_exhausted(entry))

    def test_end_date_before_last_materialized_produces_nothing(self) -> None:
        entry = recurring_entry(
            "weekly",
            datetime(2024, 1, 1),
            last_materialized=datetime(2024, 2, 5),
            end_date=datetime(2024, 2, 1),
        )

        self.assertEqual(materialize_due(entry, datetime(2024, 6, 1)), [])
        self.assertTrue(is_exhausted(entry))
        self.assertEqual(entry.recurrence.last_materialized, datetime(2024, 2, 5))

    def test_open_ended_rule_is_never_exhausted(self) -> None:
        entry = recurring_entry("daily", datetime(2024, 1, 1))

        self.assertFalse(is_exhausted(entry))

    def test_resumes_from_mid_month_last_materialized(self) -> None:
        entry = recurring_entry(
            "monthly",
            datetime(2024, 1, 31),
            last_materialized=datetime(2024, 2, 10),
        )

        self.assertEqual(next_occurrence(entry), datetime(2024, 2, 29))

    def test_non_recurring_entry_is_rejected(self) -> None:
        entry = MonetaryEntry(
            kind="expense",
            amount=Decimal("5"),
            currency="USD",
            category="Food",
            timestamp=datetime(2024, 1, 1),
        )

        with self.assertRaises(ValidationFailure):
            materialize_due(entry, datetime(2024, 2, 1))

    def test_rule_never_moves_backwards(self) -> None:
        rule = RecurrenceRule(pattern="daily", last_materialized=datetime(2024, 1, 5))

        with self.assertRaises(ValidationFailure):
            rule.advance(datetime(2024, 1, 4))


if __name__ == "__main__":
    unittest.main()
