from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ledger_backend.errors import ValidationFailure
from ledger_backend.logging_config import get_logger
from ledger_backend.models import (
    ZERO,
    BudgetBreach,
    BudgetLimit,
    BudgetStatus,
    MonetaryEntry,
    SpendingAnomaly,
    coerce_amount,
)

logger = get_logger("ledger.budget")

_ONE_DAY = timedelta(days=1)

Limits = Union[Mapping[str, Decimal], Iterable[BudgetLimit]]


def compute_trends(entries: Iterable[MonetaryEntry]) -> Dict[str, Decimal]:
    """Total normalized expense amounts per category.

    Amounts are summed in sorted order per category, so the result does not
    depend on the order the entries arrive in.
    """
    buckets: Dict[str, List[Decimal]] = {}
    for entry in entries:
        if entry.kind.strip().lower() != "expense":
            continue
        if entry.normalized_amount is None:
            logger.warning("Skipping unnormalized entry %s", entry.id, extra={"owner_id": entry.owner_id})
            continue
        buckets.setdefault(entry.category, []).append(coerce_amount(entry.normalized_amount))

    return {
        category: sum(sorted(amounts), ZERO)
        for category, amounts in sorted(buckets.items())
    }


def check_budgets(trends: Mapping[str, Decimal], limits: Limits) -> List[BudgetBreach]:
    limit_map = _limits_by_category(limits)
    breaches: List[BudgetBreach] = []
    for category in sorted(limit_map):
        if category not in trends:
            continue
        total = coerce_amount(trends[category])
        limit = limit_map[category]
        if total > limit:
            breaches.append(BudgetBreach(category=category, total=total, limit=limit))
            logger.info(
                "Budget exceeded for %s: %s > %s",
                category,
                total,
                limit,
                extra={"action": "check_budgets", "resource": "budget"},
            )
    return breaches


def evaluate_budgets(trends: Mapping[str, Decimal], limits: Limits) -> List[BudgetStatus]:
    limit_map = _limits_by_category(limits)
    statuses: List[BudgetStatus] = []
    for category in sorted(limit_map):
        limit = limit_map[category]
        spent = coerce_amount(trends.get(category, ZERO))
        statuses.append(
            BudgetStatus(
                category=category,
                limit=limit,
                spent=spent,
                remaining=limit - spent,
                status="ok" if spent <= limit else "over",
            )
        )
    return statuses


def detect_anomalies(
    current: Mapping[str, Decimal],
    baseline: Mapping[str, Decimal],
    ratio: Decimal = Decimal("1.5"),
) -> List[SpendingAnomaly]:
    if ratio <= ZERO:
        raise ValidationFailure("ratio must be greater than zero.")
    anomalies: List[SpendingAnomaly] = []
    for category in sorted(current):
        previous = coerce_amount(baseline.get(category, ZERO))
        if previous <= ZERO:
            continue
        total = coerce_amount(current[category])
        if total > previous * ratio:
            anomalies.append(
                SpendingAnomaly(
                    category=category,
                    current=total,
                    baseline=previous,
                    ratio=total / previous,
                )
            )
    return anomalies


def filter_window(
    entries: Iterable[MonetaryEntry],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[MonetaryEntry]:
    """Entries with ``start <= timestamp < end``; either bound may be open."""
    if start is not None and end is not None and start > end:
        raise ValidationFailure("start must be on or before end.")
    return [
        entry
        for entry in entries
        if (start is None or entry.timestamp >= start) and (end is None or entry.timestamp < end)
    ]


def month_window(moment: datetime) -> Tuple[datetime, datetime]:
    start = datetime(moment.year, moment.month, 1)
    last_day = monthrange(moment.year, moment.month)[1]
    return start, datetime(moment.year, moment.month, last_day) + _ONE_DAY


def previous_month_window(moment: datetime) -> Tuple[datetime, datetime]:
    start, _ = month_window(moment)
    return month_window(start - _ONE_DAY)


def period_label(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def _limits_by_category(limits: Limits) -> Dict[str, Decimal]:
    if isinstance(limits, Mapping):
        items = [(category, value) for category, value in limits.items()]
    else:
        items = [(limit.category, limit.limit) for limit in limits]

    limit_map: Dict[str, Decimal] = {}
    for category, value in items:
        if category in limit_map:
            logger.warning("Ignoring duplicate budget limit for %s", category)
            continue
        limit_map[category] = coerce_amount(value)
    return limit_map
