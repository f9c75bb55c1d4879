from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, Iterator, List, Mapping, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ledger_backend.errors import NotFound, StoreFailure, ValidationFailure
from ledger_backend.logging_config import get_logger
from ledger_backend.models import (
    BudgetLimit,
    Goal,
    MonetaryEntry,
    NotificationEvent,
    RecurrenceRule,
)

logger = get_logger("ledger.store")


class DecimalText(TypeDecorator):
    """Exact decimal stored as text; SQLite keeps Numeric columns as floats."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(Decimal(value))

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


metadata = MetaData()

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("kind", String(20), nullable=False),
    Column("amount", DecimalText, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("category", String(255), nullable=False),
    Column("normalized_amount", DecimalText, nullable=False),
    Column("timestamp", DateTime, nullable=False),
    Column("tags", JSON, nullable=False, default=list),
    Column("source_entry_id", Integer),
    Column("recurrence_pattern", String(20)),
    Column("last_materialized", DateTime),
    Column("end_date", DateTime),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("category", String(255), nullable=False),
    Column("limit_amount", DecimalText, nullable=False),
    UniqueConstraint("owner_id", "category", name="uq_budgets_owner_category"),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("description", String(1000)),
    Column("target_date", Date),
    Column("completed", Boolean, nullable=False, default=False),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("kind", String(20), nullable=False),
    Column("message", String(1000), nullable=False),
    Column("read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Column("dedup_key", String(64), nullable=False, index=True),
)

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns hand back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Repository(Generic[T]):
    """Owner-scoped CRUD over one table."""

    def __init__(
        self,
        engine: Engine,
        table: Table,
        resource: str,
        to_row: Callable[[T], Dict[str, Any]],
        from_row: Callable[[Mapping[str, Any]], T],
    ) -> None:
        self.engine = engine
        self.table = table
        self.resource = resource
        self._to_row = to_row
        self._from_row = from_row

    def create(self, record: T) -> T:
        with self.begin("create") as conn:
            return self.insert(conn, record)

    def insert(self, conn: Connection, record: T) -> T:
        """Insert ``record`` on an open connection and return it with its new id."""
        values = self._to_row(record)
        values.pop("id", None)
        result = conn.execute(insert(self.table).values(**values))
        return replace(record, id=result.inserted_primary_key[0])

    def find_by_owner(self, owner_id: int, **filters: Any) -> List[T]:
        stmt = select(self.table).where(self.table.c.owner_id == owner_id)
        for name, value in filters.items():
            if name not in self.table.c:
                raise ValidationFailure(f"Unknown {self.resource} field: {name}")
            stmt = stmt.where(self.table.c[name] == value)
        with self.begin("find") as conn:
            rows = conn.execute(stmt.order_by(self.table.c.id.asc())).mappings().all()
        return [self._from_row(row) for row in rows]

    def find_by_id_and_owner(self, record_id: int, owner_id: int) -> T:
        with self.begin("find") as conn:
            row = conn.execute(
                select(self.table).where(
                    self.table.c.id == record_id, self.table.c.owner_id == owner_id
                )
            ).mappings().first()
        if not row:
            raise NotFound(self.resource, record_id)
        return self._from_row(row)

    def update_by_id_and_owner(self, record_id: int, owner_id: int, record: T) -> T:
        with self.begin("update") as conn:
            return self.update(conn, record_id, owner_id, record)

    def update(self, conn: Connection, record_id: int, owner_id: int, record: T) -> T:
        values = self._to_row(record)
        values.pop("id", None)
        values.pop("owner_id", None)
        result = conn.execute(
            update(self.table)
            .where(self.table.c.id == record_id, self.table.c.owner_id == owner_id)
            .values(**values)
        )
        if result.rowcount == 0:
            raise NotFound(self.resource, record_id)
        row = conn.execute(
            select(self.table).where(self.table.c.id == record_id)
        ).mappings().first()
        return self._from_row(row)

    def delete_by_id_and_owner(self, record_id: int, owner_id: int) -> None:
        with self.begin("delete") as conn:
            result = conn.execute(
                delete(self.table).where(
                    self.table.c.id == record_id, self.table.c.owner_id == owner_id
                )
            )
            if result.rowcount == 0:
                raise NotFound(self.resource, record_id)

    @contextmanager
    def begin(self, action: str) -> Iterator[Connection]:
        """One database transaction with store errors translated to domain errors."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise ValidationFailure(f"{self.resource.capitalize()} already exists.") from exc
        except SQLAlchemyError as exc:
            logger.error(
                "Store %s failed for %s",
                action,
                self.resource,
                exc_info=True,
                extra={"action": action, "resource": self.resource},
            )
            raise StoreFailure(f"Failed to {action} {self.resource}.") from exc


def _entry_to_row(entry: MonetaryEntry) -> Dict[str, Any]:
    rule = entry.recurrence
    return {
        "id": entry.id,
        "owner_id": entry.owner_id,
        "kind": entry.kind,
        "amount": entry.amount,
        "currency": entry.currency,
        "category": entry.category,
        "normalized_amount": entry.normalized_amount,
        "timestamp": entry.timestamp,
        "tags": list(entry.tags),
        "source_entry_id": entry.source_entry_id,
        "recurrence_pattern": rule.pattern if rule else None,
        "last_materialized": rule.last_materialized if rule else None,
        "end_date": rule.end_date if rule else None,
    }


def _entry_from_row(row: Mapping[str, Any]) -> MonetaryEntry:
    recurrence = None
    if row["recurrence_pattern"]:
        recurrence = RecurrenceRule(
            pattern=row["recurrence_pattern"],
            last_materialized=row["last_materialized"],
            end_date=row["end_date"],
        )
    return MonetaryEntry(
        id=row["id"],
        owner_id=row["owner_id"],
        kind=row["kind"],
        amount=row["amount"],
        currency=row["currency"],
        category=row["category"],
        normalized_amount=row["normalized_amount"],
        timestamp=row["timestamp"],
        tags=tuple(row["tags"] or ()),
        source_entry_id=row["source_entry_id"],
        recurrence=recurrence,
    )


def _budget_to_row(limit: BudgetLimit) -> Dict[str, Any]:
    return {
        "id": limit.id,
        "owner_id": limit.owner_id,
        "category": limit.category,
        "limit_amount": limit.limit,
    }


def _budget_from_row(row: Mapping[str, Any]) -> BudgetLimit:
    return BudgetLimit(
        id=row["id"],
        owner_id=row["owner_id"],
        category=row["category"],
        limit=row["limit_amount"],
    )


def _goal_to_row(goal: Goal) -> Dict[str, Any]:
    return {
        "id": goal.id,
        "owner_id": goal.owner_id,
        "title": goal.title,
        "description": goal.description,
        "target_date": goal.target_date,
        "completed": goal.completed,
    }


def _goal_from_row(row: Mapping[str, Any]) -> Goal:
    return Goal(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        description=row["description"],
        target_date=row["target_date"],
        completed=bool(row["completed"]),
    )


def _notification_to_row(event: NotificationEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "owner_id": event.owner_id,
        "kind": event.kind,
        "message": event.message,
        "read": event.read,
        "created_at": event.created_at,
        "dedup_key": event.dedup_key,
    }


def _notification_from_row(row: Mapping[str, Any]) -> NotificationEvent:
    return NotificationEvent(
        id=row["id"],
        owner_id=row["owner_id"],
        kind=row["kind"],
        message=row["message"],
        read=bool(row["read"]),
        created_at=row["created_at"],
        dedup_key=row["dedup_key"],
    )


@dataclass
class EntityStore:
    engine: Engine
    transactions: Repository[MonetaryEntry]
    budgets: Repository[BudgetLimit]
    goals: Repository[Goal]
    notifications: Repository[NotificationEvent]

    def init_db(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreFailure("Failed to initialise the database.") from exc

    def post_occurrences(
        self, template: MonetaryEntry, occurrences: List[MonetaryEntry]
    ) -> List[MonetaryEntry]:
        """Insert materialized occurrences and save the advanced template atomically."""
        repository = self.transactions
        with repository.begin("materialize") as conn:
            saved = [repository.insert(conn, occurrence) for occurrence in occurrences]
            repository.update(conn, template.id, template.owner_id, template)
        return saved


def create_store_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs: Dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def build_store(database_url: str) -> EntityStore:
    engine = create_store_engine(database_url)
    return EntityStore(
        engine=engine,
        transactions=Repository(engine, transactions, "transaction", _entry_to_row, _entry_from_row),
        budgets=Repository(engine, budgets, "budget", _budget_to_row, _budget_from_row),
        goals=Repository(engine, goals, "goal", _goal_to_row, _goal_from_row),
        notifications=Repository(
            engine, notifications, "notification", _notification_to_row, _notification_from_row
        ),
    )
