from __future__ import annotations

from calendar import monthrange
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from ledger_backend.errors import ValidationFailure
from ledger_backend.logging_config import get_logger
from ledger_backend.models import MonetaryEntry, validate_pattern

logger = get_logger("ledger.recurrence")

DAILY_DAYS = 1
WEEKLY_DAYS = 7


def materialize_due(entry: MonetaryEntry, as_of: datetime) -> List[MonetaryEntry]:
    """Clone ``entry`` once for every occurrence due on or before ``as_of``.

    The entry's recurrence rule is advanced to the last generated date, so a
    second call with the same ``as_of`` yields nothing.
    """
    rule = _require_rule(entry)
    materialized: List[MonetaryEntry] = []
    for occurrence in iter_due_dates(entry, as_of):
        rule.advance(occurrence)
        materialized.append(
            replace(
                entry,
                id=None,
                timestamp=occurrence,
                source_entry_id=entry.id,
                recurrence=None,
            )
        )

    if materialized:
        logger.info(
            "Materialized %d occurrence(s) of entry %s",
            len(materialized),
            entry.id,
            extra={"owner_id": entry.owner_id, "action": "materialize", "resource": "transaction"},
        )
    return materialized


def iter_due_dates(entry: MonetaryEntry, as_of: datetime) -> Iterator[datetime]:
    """Lazily yield occurrence dates after the last materialized one."""
    rule = _require_rule(entry)
    pattern = validate_pattern(rule.pattern)
    anchor = entry.timestamp
    current = rule.last_materialized or anchor
    # Offsets count from the original entry so day-of-month clamping never drifts.
    month_offset = max(_months_between(anchor, current) - 1, 0) if pattern == "monthly" else 0

    while True:
        if pattern == "monthly":
            month_offset += 1
            candidate = _add_months(anchor, month_offset)
            if candidate <= current:
                continue
        else:
            interval = DAILY_DAYS if pattern == "daily" else WEEKLY_DAYS
            candidate = current + timedelta(days=interval)

        if candidate > as_of:
            return
        if rule.end_date is not None and candidate >= rule.end_date:
            return
        yield candidate
        current = candidate


def next_occurrence(entry: MonetaryEntry) -> Optional[datetime]:
    """The next occurrence regardless of ``as_of``, or None once exhausted."""
    return next(iter_due_dates(entry, datetime.max), None)


def is_exhausted(entry: MonetaryEntry) -> bool:
    rule = _require_rule(entry)
    if rule.end_date is None:
        return False
    return next_occurrence(entry) is None


def _require_rule(entry: MonetaryEntry):
    if entry.recurrence is None:
        raise ValidationFailure("Entry is not recurring.")
    return entry.recurrence


def _months_between(start: datetime, end: datetime) -> int:
    if end <= start:
        return 0
    return (end.year - start.year) * 12 + (end.month - start.month)


def _add_months(start: datetime, months: int) -> datetime:
    total_month = start.month - 1 + months
    year = start.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(start.day, last_day)
    return start.replace(year=year, month=month, day=day)
