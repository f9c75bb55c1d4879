from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ledger_backend.config import Settings, load_settings
from ledger_backend.currency_conversion import (
    CurrencyNormalizer,
    FrankfurterRateSource,
    RateCache,
    RateLookupClient,
    RateSource,
    StaticRateSource,
)
from ledger_backend.errors import NotFound, RateUnavailable, StoreFailure, ValidationFailure
from ledger_backend.ledger import LedgerService
from ledger_backend.logging_config import get_logger, setup_logging
from ledger_backend.models import (
    BudgetBreach,
    BudgetLimit,
    BudgetStatus,
    Goal,
    LedgerOutcome,
    MonetaryEntry,
    NotificationEvent,
    Suppressed,
)
from ledger_backend.notifications import NotificationDispatcher
from ledger_backend.store import EntityStore, build_store

settings = load_settings()
setup_logging(settings.log_level)
logger = get_logger("ledger.api")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_rate_source(config: Settings) -> RateSource:
    if config.rate_source == "static":
        return StaticRateSource()
    return FrankfurterRateSource(
        base_url=config.rate_source_url,
        timeout_seconds=config.rate_timeout_seconds,
    )


def build_service(store: EntityStore) -> LedgerService:
    rate_client = RateLookupClient(
        build_rate_source(settings),
        RateCache(ttl_seconds=settings.rate_cache_ttl_seconds),
    )
    return LedgerService(
        store=store,
        normalizer=CurrencyNormalizer(settings.accounting_currency, rate_client),
        dispatcher=NotificationDispatcher(
            store.notifications,
            cooldown=timedelta(hours=settings.notification_cooldown_hours),
        ),
        anomaly_ratio=settings.anomaly_ratio,
    )


store = build_store(settings.database_url)
ledger_service = build_service(store)


@app.on_event("startup")
def init_db() -> None:
    store.init_db()


def get_service() -> LedgerService:
    return ledger_service


@app.exception_handler(ValidationFailure)
def validation_failure_handler(request: Request, exc: ValidationFailure) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RateUnavailable)
def rate_unavailable_handler(request: Request, exc: RateUnavailable) -> JSONResponse:
    logger.warning("Rejected request: %s", exc, extra={"action": request.url.path})
    return JSONResponse(
        status_code=503,
        content={"detail": "Failed to convert currency. Please try again later."},
    )


@app.exception_handler(StoreFailure)
def store_failure_handler(request: Request, exc: StoreFailure) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    currency: str | None = None
    category: str
    date: datetime | None = None
    tags: list[str] | None = None
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    end_date: datetime | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.is_recurring and not payload.recurrence_pattern:
            raise ValidationFailure("Recurring transactions require a recurrence pattern.")
        if not payload.is_recurring:
            payload.recurrence_pattern = None
            payload.end_date = None
        return payload


class TransactionUpdatePayload(BaseModel):
    type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    category: str | None = None
    date: datetime | None = None
    tags: list[str] | None = None
    recurrence_pattern: str | None = None
    end_date: datetime | None = None


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    currency: str
    category: str
    normalized_amount: Decimal
    accounting_currency: str
    date: datetime
    tags: list[str]
    is_recurring: bool
    recurrence_pattern: str | None = None
    end_date: datetime | None = None
    last_materialized: datetime | None = None
    source_entry_id: int | None = None


class NotificationPayload(BaseModel):
    message: str
    fingerprint: str | None = None


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    type: str
    message: str
    read: bool
    created_at: datetime


class NotificationCreateResponse(BaseModel):
    suppressed: bool
    notification: NotificationResponse | None = None


class BudgetBreachResponse(BaseModel):
    category: str
    total: Decimal
    limit: Decimal


class LedgerOutcomeResponse(BaseModel):
    transactions: list[TransactionResponse]
    breaches: list[BudgetBreachResponse]
    notifications: list[NotificationResponse]


class BudgetPayload(BaseModel):
    category: str
    limit: Decimal


class BudgetUpdatePayload(BaseModel):
    category: str | None = None
    limit: Decimal | None = None


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    category: str
    limit: Decimal


class BudgetStatusResponse(BaseModel):
    category: str
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    status: str
    period: str


class GoalPayload(BaseModel):
    title: str
    description: str | None = None
    target_date: date | None = None


class GoalUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    target_date: date | None = None
    completed: bool | None = None


class GoalResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: str | None = None
    target_date: date | None = None
    completed: bool


class MaterializePayload(BaseModel):
    as_of: datetime | None = None


class DashboardResponse(BaseModel):
    transactions: list[TransactionResponse]
    budgets: list[BudgetResponse]
    goals: list[GoalResponse]


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def parse_month_value(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m")
    except ValueError as exc:
        raise ValidationFailure("Month must be in YYYY-MM format.") from exc


def transaction_response(entry: MonetaryEntry, accounting_currency: str) -> TransactionResponse:
    rule = entry.recurrence
    return TransactionResponse(
        id=entry.id,
        user_id=entry.owner_id,
        type=entry.kind,
        amount=entry.amount,
        currency=entry.currency,
        category=entry.category,
        normalized_amount=entry.normalized_amount,
        accounting_currency=accounting_currency,
        date=entry.timestamp,
        tags=list(entry.tags),
        is_recurring=rule is not None,
        recurrence_pattern=rule.pattern if rule else None,
        end_date=rule.end_date if rule else None,
        last_materialized=rule.last_materialized if rule else None,
        source_entry_id=entry.source_entry_id,
    )


def notification_response(event: NotificationEvent) -> NotificationResponse:
    return NotificationResponse(
        id=event.id,
        user_id=event.owner_id,
        type=event.kind,
        message=event.message,
        read=event.read,
        created_at=event.created_at,
    )


def budget_response(limit: BudgetLimit) -> BudgetResponse:
    return BudgetResponse(id=limit.id, user_id=limit.owner_id, category=limit.category, limit=limit.limit)


def goal_response(goal: Goal) -> GoalResponse:
    return GoalResponse(
        id=goal.id,
        user_id=goal.owner_id,
        title=goal.title,
        description=goal.description,
        target_date=goal.target_date,
        completed=goal.completed,
    )


def breach_response(breach: BudgetBreach) -> BudgetBreachResponse:
    return BudgetBreachResponse(category=breach.category, total=breach.total, limit=breach.limit)


def outcome_response(outcome: LedgerOutcome, accounting_currency: str) -> LedgerOutcomeResponse:
    return LedgerOutcomeResponse(
        transactions=[transaction_response(entry, accounting_currency) for entry in outcome.entries],
        breaches=[breach_response(breach) for breach in outcome.breaches],
        notifications=[notification_response(event) for event in outcome.notifications],
    )


def accounting_currency_of(service: LedgerService) -> str:
    return service.normalizer.accounting_currency


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    user_id: int = Depends(get_user_id), service: LedgerService = Depends(get_service)
) -> list[TransactionResponse]:
    currency = accounting_currency_of(service)
    return [transaction_response(entry, currency) for entry in service.list_transactions(user_id)]


@app.post("/transactions", response_model=LedgerOutcomeResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> LedgerOutcomeResponse:
    payload = TransactionPayload.validate_payload(payload)
    currency = accounting_currency_of(service)
    outcome = service.record_transaction(
        user_id,
        kind=payload.type,
        amount=payload.amount,
        currency=payload.currency or currency,
        category=payload.category,
        timestamp=payload.date,
        tags=payload.tags,
        recurrence_pattern=payload.recurrence_pattern,
        end_date=payload.end_date,
    )
    return outcome_response(outcome, currency)


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> TransactionResponse:
    entry = service.get_transaction(user_id, transaction_id)
    return transaction_response(entry, accounting_currency_of(service))


@app.put("/transactions/{transaction_id}", response_model=LedgerOutcomeResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> LedgerOutcomeResponse:
    changes = payload.model_dump(exclude_unset=True)
    if "type" in changes:
        changes["kind"] = changes.pop("type")
    if "date" in changes:
        changes["timestamp"] = changes.pop("date")
    outcome = service.update_transaction(user_id, transaction_id, **changes)
    return outcome_response(outcome, accounting_currency_of(service))


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> dict:
    service.delete_transaction(user_id, transaction_id)
    return {"message": "Transaction deleted successfully"}


@app.post("/recurring/materialize", response_model=LedgerOutcomeResponse)
def materialize_recurring(
    payload: MaterializePayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> LedgerOutcomeResponse:
    outcome = service.materialize_recurring(user_id, payload.as_of)
    return outcome_response(outcome, accounting_currency_of(service))


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    user_id: int = Depends(get_user_id), service: LedgerService = Depends(get_service)
) -> list[BudgetResponse]:
    return [budget_response(limit) for limit in service.list_budgets(user_id)]


@app.post("/budgets", response_model=BudgetResponse, status_code=201)
def create_budget(
    payload: BudgetPayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> BudgetResponse:
    return budget_response(service.set_budget(user_id, payload.category, payload.limit))


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> BudgetResponse:
    limit = service.update_budget(user_id, budget_id, category=payload.category, limit=payload.limit)
    return budget_response(limit)


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> dict:
    service.delete_budget(user_id, budget_id)
    return {"message": "Budget deleted successfully"}


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(
    user_id: int = Depends(get_user_id), service: LedgerService = Depends(get_service)
) -> list[GoalResponse]:
    return [goal_response(goal) for goal in service.list_goals(user_id)]


@app.post("/goals", response_model=GoalResponse, status_code=201)
def create_goal(
    payload: GoalPayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> GoalResponse:
    goal, _ = service.create_goal(user_id, payload.title, payload.description, payload.target_date)
    return goal_response(goal)


@app.put("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> GoalResponse:
    goal = service.update_goal(user_id, goal_id, **payload.model_dump(exclude_unset=True))
    return goal_response(goal)


@app.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> dict:
    service.delete_goal(user_id, goal_id)
    return {"message": "Goal deleted successfully"}


@app.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    user_id: int = Depends(get_user_id), service: LedgerService = Depends(get_service)
) -> list[NotificationResponse]:
    return [notification_response(event) for event in service.list_notifications(user_id)]


@app.post("/notifications", response_model=NotificationCreateResponse, status_code=201)
def create_notification(
    payload: NotificationPayload,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> NotificationCreateResponse:
    result = service.notify_custom(user_id, payload.message, payload.fingerprint)
    if isinstance(result, Suppressed):
        return NotificationCreateResponse(suppressed=True)
    return NotificationCreateResponse(suppressed=False, notification=notification_response(result))


@app.put("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: int,
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> NotificationResponse:
    return notification_response(service.mark_read(user_id, notification_id))


@app.get("/reports/spending-trends", response_model=dict[str, Decimal])
def spending_trends(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> dict[str, Decimal]:
    return service.spending_trends(user_id, start, end)


@app.get("/reports/budget-status", response_model=list[BudgetStatusResponse])
def budget_status(
    month: str | None = Query(None),
    user_id: int = Depends(get_user_id),
    service: LedgerService = Depends(get_service),
) -> list[BudgetStatusResponse]:
    moment = parse_month_value(month) if month else service.clock()
    period = moment.strftime("%Y-%m")
    return [
        budget_status_response(status, period)
        for status in service.budget_status(user_id, moment)
    ]


def budget_status_response(status: BudgetStatus, period: str) -> BudgetStatusResponse:
    return BudgetStatusResponse(
        category=status.category,
        limit=status.limit,
        spent=status.spent,
        remaining=status.remaining,
        status=status.status,
        period=period,
    )


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    user_id: int = Depends(get_user_id), service: LedgerService = Depends(get_service)
) -> DashboardResponse:
    data = service.dashboard(user_id)
    currency = accounting_currency_of(service)
    return DashboardResponse(
        transactions=[transaction_response(entry, currency) for entry in data["transactions"]],
        budgets=[budget_response(limit) for limit in data["budgets"]],
        goals=[goal_response(goal) for goal in data["goals"]],
    )
