import unittest
from datetime import date, datetime, timedelta

from ledger_backend.errors import NotFound, ValidationFailure
from ledger_backend.models import NotificationEvent, Suppressed
from ledger_backend.notifications import (
    NotificationDispatcher,
    budget_breach_fingerprint,
    dedup_key,
    goal_fingerprint,
    recurring_fingerprint,
)
from ledger_backend.store import build_store


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class NotificationDispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = build_store("sqlite://")
        self.store.init_db()
        self.clock = FakeClock(datetime(2024, 5, 1, 9, 0))
        self.dispatcher = NotificationDispatcher(
            self.store.notifications,
            cooldown=timedelta(hours=24),
            clock=self.clock,
        )

    def test_creates_unread_notification(self) -> None:
        result = self.dispatcher.notify(1, "goal", "Goal created: Save", goal_fingerprint(3))

        self.assertIsInstance(result, NotificationEvent)
        self.assertFalse(result.read)
        self.assertEqual(result.kind, "goal")
        self.assertEqual(result.created_at, datetime(2024, 5, 1, 9, 0))
        self.assertEqual(result.dedup_key, dedup_key(1, "goal", "goal:3"))
        self.assertEqual(len(self.store.notifications.find_by_owner(1)), 1)

    def test_duplicate_within_cooldown_is_suppressed(self) -> None:
        fingerprint = budget_breach_fingerprint("Food", "2024-05")
        first = self.dispatcher.notify(1, "spending", "Food over budget", fingerprint)
        self.clock.now += timedelta(hours=3)
        second = self.dispatcher.notify(1, "spending", "Food over budget", fingerprint)

        self.assertIsInstance(second, Suppressed)
        self.assertEqual(second.existing_id, first.id)
        self.assertEqual(len(self.store.notifications.find_by_owner(1)), 1)

    def test_unread_duplicate_is_suppressed_after_cooldown(self) -> None:
        self.dispatcher.notify(1, "spending", "Food over budget", "budget:Food:2024-05")
        self.clock.now += timedelta(days=3)

        result = self.dispatcher.notify(1, "spending", "Food over budget", "budget:Food:2024-05")

        self.assertIsInstance(result, Suppressed)

    def test_read_duplicate_after_cooldown_is_created_again(self) -> None:
        first = self.dispatcher.notify(1, "spending", "Food over budget", "budget:Food:2024-05")
        self.dispatcher.mark_read(1, first.id)
        self.clock.now += timedelta(hours=25)

        result = self.dispatcher.notify(1, "spending", "Food over budget", "budget:Food:2024-05")

        self.assertIsInstance(result, NotificationEvent)
        self.assertEqual(len(self.store.notifications.find_by_owner(1)), 2)

    def test_read_duplicate_inside_cooldown_is_still_suppressed(self) -> None:
        first = self.dispatcher.notify(1, "goal", "Goal created", "goal:1")
        self.dispatcher.mark_read(1, first.id)
        self.clock.now += timedelta(hours=1)

        self.assertIsInstance(self.dispatcher.notify(1, "goal", "Goal created", "goal:1"), Suppressed)

    def test_dedup_is_scoped_by_owner_kind_and_fingerprint(self) -> None:
        results = [
            self.dispatcher.notify(1, "recurring", "Posted", recurring_fingerprint(4, date(2024, 2, 15))),
            self.dispatcher.notify(2, "recurring", "Posted", recurring_fingerprint(4, date(2024, 2, 15))),
            self.dispatcher.notify(1, "custom", "Posted", recurring_fingerprint(4, date(2024, 2, 15))),
            self.dispatcher.notify(1, "recurring", "Posted", recurring_fingerprint(4, date(2024, 3, 15))),
        ]

        self.assertTrue(all(isinstance(result, NotificationEvent) for result in results))

    def test_rejects_unknown_kind_and_empty_message(self) -> None:
        with self.assertRaises(ValidationFailure):
            self.dispatcher.notify(1, "email", "Hello", "x")
        with self.assertRaises(ValidationFailure):
            self.dispatcher.notify(1, "custom", "   ", "x")

    def test_list_is_newest_first_and_owner_scoped(self) -> None:
        self.dispatcher.notify(1, "custom", "first", "a")
        self.clock.now += timedelta(minutes=5)
        self.dispatcher.notify(1, "custom", "second", "b")
        self.dispatcher.notify(2, "custom", "other owner", "c")

        messages = [event.message for event in self.dispatcher.list_for_owner(1)]

        self.assertEqual(messages, ["second", "first"])

    def test_mark_read_of_another_owners_notification_is_not_found(self) -> None:
        event = self.dispatcher.notify(1, "custom", "mine", "a")

        with self.assertRaises(NotFound):
            self.dispatcher.mark_read(2, event.id)
        self.assertTrue(self.dispatcher.mark_read(1, event.id).read)


if __name__ == "__main__":
    unittest.main()
