from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ledger_backend.budget_engine import (
    check_budgets,
    compute_trends,
    detect_anomalies,
    evaluate_budgets,
    filter_window,
    month_window,
    period_label,
    previous_month_window,
)
from ledger_backend.currency_conversion import CurrencyNormalizer, minor_unit_exponent
from ledger_backend.errors import ValidationFailure
from ledger_backend.logging_config import get_logger
from ledger_backend.models import (
    BudgetBreach,
    BudgetLimit,
    BudgetStatus,
    Goal,
    LedgerOutcome,
    MonetaryEntry,
    NotificationEvent,
    build_entry,
    non_negative_amount,
    to_naive_utc,
    validate_category,
)
from ledger_backend.notifications import (
    NotificationDispatcher,
    NotifyResult,
    anomaly_fingerprint,
    budget_breach_fingerprint,
    goal_fingerprint,
    recurring_fingerprint,
)
from ledger_backend.recurring_expansion import is_exhausted, materialize_due
from ledger_backend.store import EntityStore, utcnow

logger = get_logger("ledger")

TRANSACTION_FIELDS = {
    "kind",
    "amount",
    "currency",
    "category",
    "timestamp",
    "tags",
    "recurrence_pattern",
    "end_date",
}
GOAL_FIELDS = {"title", "description", "target_date", "completed"}

# (category, month containing the affected entries)
Affected = Tuple[str, datetime]


class LedgerService:
    """Runs the normalize, persist, aggregate, notify flow for one owner at a time."""

    def __init__(
        self,
        store: EntityStore,
        normalizer: CurrencyNormalizer,
        dispatcher: NotificationDispatcher,
        anomaly_ratio: Decimal = Decimal("1.5"),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.normalizer = normalizer
        self.dispatcher = dispatcher
        self.anomaly_ratio = anomaly_ratio
        self.clock = clock

    # Transactions

    def record_transaction(
        self,
        owner_id: int,
        *,
        kind: str,
        amount: Decimal | int | float | str,
        currency: str,
        category: str,
        timestamp: Optional[datetime] = None,
        tags: Optional[Iterable[str]] = None,
        recurrence_pattern: Optional[str] = None,
        end_date: Optional[datetime] = None,
    ) -> LedgerOutcome:
        entry = build_entry(
            kind=kind,
            amount=amount,
            currency=currency,
            category=category,
            timestamp=timestamp or self.clock(),
            owner_id=owner_id,
            tags=tuple(tags or ()),
            recurrence_pattern=recurrence_pattern,
            end_date=end_date,
        )
        normalized = self.normalizer.normalize(entry.amount, entry.currency)
        saved = self.store.transactions.create(replace(entry, normalized_amount=normalized))
        logger.info(
            "Recorded %s %s",
            saved.kind,
            saved.id,
            extra={"owner_id": owner_id, "action": "record", "resource": "transaction"},
        )

        breaches, events = self._evaluate(owner_id, _affected([saved]))
        return LedgerOutcome(entries=(saved,), breaches=breaches, notifications=events)

    def update_transaction(self, owner_id: int, entry_id: int, **changes: Any) -> LedgerOutcome:
        unknown = set(changes) - TRANSACTION_FIELDS
        if unknown:
            raise ValidationFailure(f"Unknown transaction field(s): {', '.join(sorted(unknown))}")

        existing = self.store.transactions.find_by_id_and_owner(entry_id, owner_id)
        rule = existing.recurrence
        candidate = build_entry(
            kind=changes.get("kind", existing.kind),
            amount=changes.get("amount", existing.amount),
            currency=changes.get("currency", existing.currency),
            category=changes.get("category", existing.category),
            timestamp=changes.get("timestamp", existing.timestamp),
            owner_id=owner_id,
            tags=tuple(changes.get("tags", existing.tags) or ()),
            recurrence_pattern=changes.get("recurrence_pattern", rule.pattern if rule else None),
            end_date=changes.get("end_date", rule.end_date if rule else None),
        )
        if candidate.recurrence and rule and rule.last_materialized:
            last = max(rule.last_materialized, candidate.timestamp)
            if candidate.recurrence.end_date is not None and last >= candidate.recurrence.end_date:
                raise ValidationFailure("End date must be after the last materialized occurrence.")
            candidate.recurrence.last_materialized = last

        if (candidate.amount, candidate.currency) == (existing.amount, existing.currency):
            normalized = existing.normalized_amount
        else:
            normalized = self.normalizer.normalize(candidate.amount, candidate.currency)

        saved = self.store.transactions.update_by_id_and_owner(
            entry_id,
            owner_id,
            replace(
                candidate,
                id=entry_id,
                normalized_amount=normalized,
                source_entry_id=existing.source_entry_id,
            ),
        )
        breaches, events = self._evaluate(owner_id, _affected([saved]))
        return LedgerOutcome(entries=(saved,), breaches=breaches, notifications=events)

    def delete_transaction(self, owner_id: int, entry_id: int) -> None:
        self.store.transactions.delete_by_id_and_owner(entry_id, owner_id)

    def get_transaction(self, owner_id: int, entry_id: int) -> MonetaryEntry:
        return self.store.transactions.find_by_id_and_owner(entry_id, owner_id)

    def list_transactions(self, owner_id: int) -> List[MonetaryEntry]:
        return self.store.transactions.find_by_owner(owner_id)

    # Recurring transactions

    def materialize_recurring(self, owner_id: int, as_of: Optional[datetime] = None) -> LedgerOutcome:
        """Post every recurring occurrence of ``owner_id`` that is due by ``as_of``."""
        moment = to_naive_utc(as_of) or self.clock()
        created: List[MonetaryEntry] = []
        events: List[NotificationEvent] = []

        for template in self.store.transactions.find_by_owner(owner_id):
            if not template.is_recurring or is_exhausted(template):
                continue
            occurrences = materialize_due(template, moment)
            if not occurrences:
                continue

            # All occurrences are normalized before the first write.
            normalized = [
                replace(
                    occurrence,
                    normalized_amount=self.normalizer.normalize(occurrence.amount, occurrence.currency),
                )
                for occurrence in occurrences
            ]
            posted = self.store.post_occurrences(template, normalized)
            created.extend(posted)
            for saved in posted:
                self._collect(
                    events,
                    self.dispatcher.notify(
                        owner_id,
                        "recurring",
                        f"Recurring {saved.kind} of {_money(saved.amount, saved.currency)} for "
                        f"{saved.category} posted on {saved.timestamp.date().isoformat()}.",
                        recurring_fingerprint(template.id, saved.timestamp),
                    ),
                )

        breaches, budget_events = self._evaluate(owner_id, _affected(created))
        return LedgerOutcome(
            entries=tuple(created),
            breaches=breaches,
            notifications=tuple(events) + budget_events,
        )

    # Budgets

    def set_budget(self, owner_id: int, category: str, limit: Decimal | int | float | str) -> BudgetLimit:
        name = validate_category(category)
        if self.store.budgets.find_by_owner(owner_id, category=name):
            raise ValidationFailure(f"Budget for {name} already exists.")
        return self.store.budgets.create(
            BudgetLimit(category=name, limit=non_negative_amount(limit), owner_id=owner_id)
        )

    def update_budget(
        self,
        owner_id: int,
        budget_id: int,
        category: Optional[str] = None,
        limit: Decimal | int | float | str | None = None,
    ) -> BudgetLimit:
        existing = self.store.budgets.find_by_id_and_owner(budget_id, owner_id)
        name = validate_category(category) if category is not None else existing.category
        if name != existing.category and self.store.budgets.find_by_owner(owner_id, category=name):
            raise ValidationFailure(f"Budget for {name} already exists.")
        updated = replace(
            existing,
            category=name,
            limit=non_negative_amount(limit) if limit is not None else existing.limit,
        )
        return self.store.budgets.update_by_id_and_owner(budget_id, owner_id, updated)

    def delete_budget(self, owner_id: int, budget_id: int) -> None:
        self.store.budgets.delete_by_id_and_owner(budget_id, owner_id)

    def list_budgets(self, owner_id: int) -> List[BudgetLimit]:
        return self.store.budgets.find_by_owner(owner_id)

    # Goals

    def create_goal(
        self,
        owner_id: int,
        title: str,
        description: Optional[str] = None,
        target_date: Optional[date] = None,
    ) -> Tuple[Goal, NotifyResult]:
        name = (title or "").strip()
        if not name:
            raise ValidationFailure("Goal title required.")
        goal = self.store.goals.create(
            Goal(
                title=name,
                owner_id=owner_id,
                description=description.strip() if description else None,
                target_date=target_date,
            )
        )
        result = self.dispatcher.notify(
            owner_id,
            "goal",
            f"You have successfully created a new goal: {goal.title}.",
            goal_fingerprint(goal.id),
        )
        return goal, result

    def update_goal(self, owner_id: int, goal_id: int, **changes: Any) -> Goal:
        unknown = set(changes) - GOAL_FIELDS
        if unknown:
            raise ValidationFailure(f"Unknown goal field(s): {', '.join(sorted(unknown))}")
        existing = self.store.goals.find_by_id_and_owner(goal_id, owner_id)
        if "title" in changes:
            changes["title"] = (changes["title"] or "").strip()
            if not changes["title"]:
                raise ValidationFailure("Goal title required.")
        return self.store.goals.update_by_id_and_owner(goal_id, owner_id, replace(existing, **changes))

    def delete_goal(self, owner_id: int, goal_id: int) -> None:
        self.store.goals.delete_by_id_and_owner(goal_id, owner_id)

    def list_goals(self, owner_id: int) -> List[Goal]:
        return self.store.goals.find_by_owner(owner_id)

    # Reports

    def spending_trends(
        self,
        owner_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Decimal]:
        entries = self.store.transactions.find_by_owner(owner_id, kind="expense")
        return compute_trends(filter_window(entries, to_naive_utc(start), to_naive_utc(end)))

    def budget_status(self, owner_id: int, moment: Optional[datetime] = None) -> List[BudgetStatus]:
        start, end = month_window(to_naive_utc(moment) or self.clock())
        return evaluate_budgets(self.spending_trends(owner_id, start, end), self.list_budgets(owner_id))

    def dashboard(self, owner_id: int) -> Dict[str, list]:
        return {
            "transactions": self.list_transactions(owner_id),
            "budgets": self.list_budgets(owner_id),
            "goals": self.list_goals(owner_id),
        }

    # Notifications

    def notify_custom(self, owner_id: int, message: str, fingerprint: Optional[str] = None) -> NotifyResult:
        return self.dispatcher.notify(owner_id, "custom", message, fingerprint or f"custom:{message.strip()}")

    def list_notifications(self, owner_id: int) -> List[NotificationEvent]:
        return self.dispatcher.list_for_owner(owner_id)

    def mark_read(self, owner_id: int, notification_id: int) -> NotificationEvent:
        return self.dispatcher.mark_read(owner_id, notification_id)

    def _evaluate(
        self, owner_id: int, affected: Set[Affected]
    ) -> Tuple[Tuple[BudgetBreach, ...], Tuple[NotificationEvent, ...]]:
        """Re-check budgets and spending anomalies for the affected categories."""
        if not affected:
            return (), ()
        expenses = self.store.transactions.find_by_owner(owner_id, kind="expense")
        limits = self.list_budgets(owner_id)
        currency = self.normalizer.accounting_currency
        breaches: List[BudgetBreach] = []
        events: List[NotificationEvent] = []

        for month in sorted({moment for _, moment in affected}):
            categories = {category for category, moment in affected if moment == month}
            period = period_label(month)
            current = compute_trends(filter_window(expenses, *month_window(month)))
            baseline = compute_trends(filter_window(expenses, *previous_month_window(month)))

            scoped = [limit for limit in limits if limit.category in categories]
            for breach in check_budgets(current, scoped):
                breaches.append(breach)
                self._collect(
                    events,
                    self.dispatcher.notify(
                        owner_id,
                        "spending",
                        f"You have exceeded your {breach.category} budget for {period}: "
                        f"spent {_money(breach.total, currency)} "
                        f"against a limit of {_money(breach.limit, currency)}.",
                        budget_breach_fingerprint(breach.category, period),
                    ),
                )

            current_scoped = {
                category: total for category, total in current.items() if category in categories
            }
            for anomaly in detect_anomalies(current_scoped, baseline, self.anomaly_ratio):
                self._collect(
                    events,
                    self.dispatcher.notify(
                        owner_id,
                        "spending",
                        f"Spending on {anomaly.category} in {period} is "
                        f"{_money(anomaly.current, currency)}, "
                        f"up from {_money(anomaly.baseline, currency)} the month before.",
                        anomaly_fingerprint(anomaly.category, period),
                    ),
                )

        return tuple(breaches), tuple(events)

    @staticmethod
    def _collect(events: List[NotificationEvent], result: NotifyResult) -> None:
        if isinstance(result, NotificationEvent):
            events.append(result)


def _money(amount: Decimal, currency: str) -> str:
    return f"{amount.quantize(minor_unit_exponent(currency))} {currency}"


def _affected(entries: Iterable[MonetaryEntry]) -> Set[Affected]:
    return {
        (entry.category, month_window(entry.timestamp)[0])
        for entry in entries
        if entry.kind == "expense"
    }
