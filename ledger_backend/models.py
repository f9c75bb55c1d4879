from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from ledger_backend.errors import ValidationFailure

ZERO = Decimal("0")

ENTRY_KINDS = {"income", "expense"}
RECURRENCE_PATTERNS = {"daily", "weekly", "monthly"}
NOTIFICATION_KINDS = {"spending", "recurring", "goal", "custom"}

# Active ISO 4217 codes, excluding the XTS test code and XXX "no currency".
ISO_CURRENCIES = frozenset(
    """
    AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND BOB BOV
    BRL BSD BTN BWP BYN BZD CAD CDF CHE CHF CHW CLF CLP CNY COP COU CRC CUC CUP CVE
    CZK DJF DKK DOP DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS GIP GMD GNF GTQ GYD HKD
    HNL HTG HUF IDR ILS INR IQD IRR ISK JMD JOD JPY KES KGS KHR KMF KPW KRW KWD KYD
    KZT LAK LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR MVR MWK MXN MXV
    MYR MZN NAD NGN NIO NOK NPR NZD OMR PAB PEN PGK PHP PKR PLN PYG QAR RON RSD RUB
    RWF SAR SBD SCR SDG SEK SGD SHP SLE SLL SOS SRD SSP STN SVC SYP SZL THB TJS TMT
    TND TOP TRY TTD TWD TZS UAH UGX USD USN UYI UYU UYW UZS VED VES VND VUV WST XAF
    XAG XAU XBA XBB XBC XBD XCD XCG XDR XOF XPD XPF XPT XSU XUA YER ZAR ZMW ZWG ZWL
    """.split()
)


@dataclass
class RecurrenceRule:
    pattern: str
    last_materialized: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def advance(self, occurrence: datetime) -> None:
        if self.last_materialized is not None and occurrence < self.last_materialized:
            raise ValidationFailure("last_materialized must not move backwards.")
        if self.end_date is not None and occurrence >= self.end_date:
            raise ValidationFailure("Occurrence falls on or after the recurrence end date.")
        self.last_materialized = occurrence


@dataclass(frozen=True)
class MonetaryEntry:
    kind: str
    amount: Decimal
    currency: str
    category: str
    timestamp: datetime
    normalized_amount: Optional[Decimal] = None
    owner_id: Optional[int] = None
    id: Optional[int] = None
    tags: Tuple[str, ...] = ()
    source_entry_id: Optional[int] = None
    recurrence: Optional[RecurrenceRule] = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


@dataclass(frozen=True)
class BudgetLimit:
    category: str
    limit: Decimal
    owner_id: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Goal:
    title: str
    owner_id: Optional[int] = None
    id: Optional[int] = None
    description: Optional[str] = None
    target_date: Optional[date] = None
    completed: bool = False


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    owner_id: int
    message: str
    dedup_key: str
    created_at: datetime
    read: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class Suppressed:
    dedup_key: str
    existing_id: Optional[int] = None


@dataclass(frozen=True)
class BudgetBreach:
    category: str
    total: Decimal
    limit: Decimal


@dataclass(frozen=True)
class BudgetStatus:
    category: str
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    status: str


@dataclass(frozen=True)
class SpendingAnomaly:
    category: str
    current: Decimal
    baseline: Decimal
    ratio: Decimal


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of a ledger mutation plus the notifications it triggered."""

    entries: Tuple[MonetaryEntry, ...] = ()
    breaches: Tuple[BudgetBreach, ...] = ()
    notifications: Tuple[NotificationEvent, ...] = ()


def normalize_currency(value: str) -> str:
    if not isinstance(value, str):
        raise ValidationFailure("Currency must be a 3-letter ISO 4217 code.")
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha() or not normalized.isascii():
        raise ValidationFailure("Currency must be a 3-letter ISO 4217 code.")
    if normalized not in ISO_CURRENCIES:
        raise ValidationFailure(f"Unknown currency code: {normalized}.")
    return normalized


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert aware datetimes to naive UTC; naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def validate_kind(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in ENTRY_KINDS:
        raise ValidationFailure("Transaction kind must be income or expense.")
    return normalized


def validate_pattern(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in RECURRENCE_PATTERNS:
        raise ValidationFailure("Recurrence pattern must be daily, weekly, or monthly.")
    return normalized


def validate_notification_kind(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in NOTIFICATION_KINDS:
        raise ValidationFailure("Notification kind must be spending, recurring, goal, or custom.")
    return normalized


def validate_category(value: Optional[str]) -> str:
    normalized = (value or "").strip()
    if not normalized:
        raise ValidationFailure("Category required.")
    return normalized


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, bool):
        raise ValidationFailure("Amount must be a decimal number.")
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation as exc:
            raise ValidationFailure("Amount must be a decimal number.") from exc
    if not value.is_finite():
        raise ValidationFailure("Amount must be a finite number.")
    return value


def positive_amount(amount: Decimal | int | float | str) -> Decimal:
    value = coerce_amount(amount)
    if value <= ZERO:
        raise ValidationFailure("Amount must be greater than zero.")
    return value


def non_negative_amount(amount: Decimal | int | float | str) -> Decimal:
    value = coerce_amount(amount)
    if value < ZERO:
        raise ValidationFailure("Limit must not be negative.")
    return value


def build_entry(
    *,
    kind: str,
    amount: Decimal | int | float | str,
    currency: str,
    category: Optional[str],
    timestamp: datetime,
    owner_id: Optional[int] = None,
    tags: Optional[Tuple[str, ...]] = None,
    recurrence_pattern: Optional[str] = None,
    end_date: Optional[datetime] = None,
) -> MonetaryEntry:
    """Validate raw transaction fields and build an unnormalized entry."""
    if timestamp is None:
        raise ValidationFailure("Timestamp required.")
    timestamp = to_naive_utc(timestamp)
    end_date = to_naive_utc(end_date)
    recurrence = None
    if recurrence_pattern:
        if end_date is not None and end_date <= timestamp:
            raise ValidationFailure("End date must be after the transaction date.")
        recurrence = RecurrenceRule(
            pattern=validate_pattern(recurrence_pattern),
            last_materialized=timestamp,
            end_date=end_date,
        )
    elif end_date is not None:
        raise ValidationFailure("End date requires a recurrence pattern.")
    return MonetaryEntry(
        kind=validate_kind(kind),
        amount=positive_amount(amount),
        currency=normalize_currency(currency),
        category=validate_category(category),
        timestamp=timestamp,
        owner_id=owner_id,
        tags=tuple(tag.strip() for tag in (tags or ()) if tag and tag.strip()),
        recurrence=recurrence,
    )
