from datetime import date
from decimal import Decimal
import logging

from fastapi import FastAPI, HTTPException, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cashbook.budget_engine import Budget, BudgetExceeded, BudgetStatus
from cashbook.config import Settings, get_settings
from cashbook.errors import (
    ApplyConflict,
    DuplicateBudget,
    InvalidAmount,
    NotDue,
    NotFound,
    PartialApply,
)
from cashbook.ledger import (
    GROUP_BY_CATEGORY,
    GROUP_BY_CURRENCY,
    Aggregation,
    Transaction,
    Window,
    normalize_kind,
)
from cashbook.log import init_logging, request_context_middleware
from cashbook.money import normalize_currency, parse_month_value
from cashbook.recurring_scheduler import RecurringRule, validate_interval
from cashbook.service import Cashbook
from cashbook.store import CashbookStore, create_store_engine

logger = logging.getLogger("cashbook.errors")


class AccountPayload(BaseModel):
    name: str
    currency: str

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.currency = normalize_currency(payload.currency)
        return payload


class AccountResponse(BaseModel):
    id: int
    owner_id: int
    name: str
    currency: str


class CategoryPayload(BaseModel):
    name: str
    kind: str = "expense"

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.kind = normalize_kind(payload.kind)
        return payload


class CategoryResponse(BaseModel):
    id: int
    owner_id: int | None = None
    name: str
    kind: str


class TransactionPayload(BaseModel):
    account_id: int
    category_id: int | None = None
    amount: Decimal
    currency: str
    kind: str
    date: date
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.kind = normalize_kind(payload.kind)
        payload.currency = normalize_currency(payload.currency)
        payload.note = payload.note.strip() if payload.note else None
        if payload.amount <= 0:
            raise InvalidAmount("Amount must be greater than zero.")
        return payload

    def to_transaction(self) -> Transaction:
        return Transaction(
            amount=self.amount,
            currency=self.currency,
            kind=self.kind,
            date=self.date,
            account_id=self.account_id,
            category_id=self.category_id,
            note=self.note,
        )


class TransactionResponse(BaseModel):
    id: int
    owner_id: int
    account_id: int
    category_id: int | None = None
    amount: Decimal
    currency: str
    kind: str
    date: date
    note: str | None = None


class BudgetPayload(BaseModel):
    category_id: int
    month: str
    limit_amount: Decimal
    currency: str

    def to_budget(self) -> Budget:
        return Budget(
            category_id=self.category_id,
            month=parse_month_value(self.month),
            limit_amount=self.limit_amount,
            currency=self.currency,
        )


class BudgetResponse(BaseModel):
    id: int
    owner_id: int
    category_id: int
    month: date
    limit_amount: Decimal
    currency: str


class BudgetStatusResponse(BaseModel):
    budget_id: int
    category_id: int
    month: date
    spent: Decimal
    limit: Decimal
    currency: str
    pct: int
    status: str
    approximate: bool = False
    chart_spent: Decimal | None = None
    chart_limit: Decimal | None = None
    chart_currency: str | None = None


class BudgetExceededResponse(BaseModel):
    budget_id: int | None = None
    category_id: int
    category_name: str
    month: date
    spent: Decimal
    limit: Decimal
    currency: str


class BudgetEvaluationResponse(BaseModel):
    month: date
    statuses: list[BudgetStatusResponse]
    events: list[BudgetExceededResponse]


class RecurringRulePayload(BaseModel):
    account_id: int | None = None
    category_id: int | None = None
    kind: str = "expense"
    amount: Decimal
    currency: str
    interval: str = "monthly"
    anchor_date: date | None = None
    next_run_date: date
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "RecurringRulePayload") -> "RecurringRulePayload":
        if payload.amount <= 0:
            raise InvalidAmount("Recurring amount must be greater than zero.")
        payload.kind = normalize_kind(payload.kind)
        payload.currency = normalize_currency(payload.currency)
        payload.interval = validate_interval(payload.interval)
        payload.note = payload.note.strip() if payload.note else None
        if payload.anchor_date is None:
            payload.anchor_date = payload.next_run_date
        return payload

    def to_rule(self) -> RecurringRule:
        return RecurringRule(
            amount=self.amount,
            currency=self.currency,
            interval=self.interval,
            anchor_date=self.anchor_date,
            next_run_date=self.next_run_date,
            kind=self.kind,
            account_id=self.account_id,
            category_id=self.category_id,
            note=self.note,
        )


class RecurringRuleResponse(BaseModel):
    id: int
    owner_id: int
    account_id: int | None = None
    category_id: int | None = None
    kind: str
    amount: Decimal
    currency: str
    interval: str
    anchor_date: date
    next_run_date: date
    note: str | None = None


class ApplyRecurringPayload(BaseModel):
    reference_date: date | None = None


class FxRatePayload(BaseModel):
    base: str
    target: str
    rate: Decimal


class FxRateResponse(BaseModel):
    id: int
    base: str
    target: str
    rate: Decimal


class TotalsRow(BaseModel):
    group: str
    currency: str
    income: Decimal
    expense: Decimal
    net: Decimal


class TotalsResponse(BaseModel):
    window: str
    group_by: str
    rows: list[TotalsRow]
    skipped: int


class CategoryShareResponse(BaseModel):
    category_id: int | None = None
    name: str
    amount: Decimal


class CategoryBreakdownResponse(BaseModel):
    currency: str
    shares: list[CategoryShareResponse]
    approximate: bool
    skipped: int


class SearchResponse(BaseModel):
    entity: str
    page: int
    page_size: int
    total_count: int
    total_pages: int
    items: list[dict]


class ConversionResponse(BaseModel):
    amount: Decimal
    source: str
    target: str
    converted: Decimal
    path: str
    approximate: bool


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user identity.") from exc


def build_window(
    window: str, month: str | None, start: date | None, end: date | None
) -> Window:
    normalized = window.strip().lower()
    if normalized == "lifetime":
        return Window.lifetime()
    if normalized == "month":
        return Window.month(parse_month_value(month) if month else date.today())
    if normalized == "range":
        if start is None or end is None:
            raise ValueError("Range windows require start and end.")
        return Window.between(start, end)
    raise ValueError("Window must be 'lifetime', 'month', or 'range'.")


def totals_rows(aggregation: Aggregation, group_by: str) -> list[TotalsRow]:
    rows = []
    for key, totals in aggregation.totals.items():
        if group_by == GROUP_BY_CATEGORY:
            group, currency = key
        else:
            group, currency = key, key
        rows.append(
            TotalsRow(
                group=str(group),
                currency=currency,
                income=totals.income,
                expense=totals.expense,
                net=totals.net,
            )
        )
    rows.sort(key=lambda row: (row.group, row.currency))
    return rows


def status_response(
    result: BudgetStatus, chart_currency: str | None, cashbook: Cashbook, owner_id: int
) -> BudgetStatusResponse:
    response = BudgetStatusResponse(
        budget_id=result.budget.id,
        category_id=result.budget.category_id,
        month=result.budget.month,
        spent=result.spent.amount,
        limit=result.limit.amount,
        currency=result.spent.currency,
        pct=result.pct,
        status=result.status,
        approximate=result.approximate,
    )
    if chart_currency:
        spent, limit = result.in_currency(chart_currency, cashbook.rate_resolver(owner_id))
        response.chart_spent = spent.amount
        response.chart_limit = limit.amount
        response.chart_currency = spent.currency
    return response


def event_response(event: BudgetExceeded) -> BudgetExceededResponse:
    return BudgetExceededResponse(
        budget_id=event.budget_id,
        category_id=event.category_id,
        category_name=event.category_name,
        month=event.month,
        spent=event.spent.amount,
        limit=event.limit.amount,
        currency=event.spent.currency,
    )


def _error(status_code: int, error: str, detail: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    def not_found_handler(request: Request, exc: NotFound):
        return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))

    @app.exception_handler(DuplicateBudget)
    def duplicate_budget_handler(request: Request, exc: DuplicateBudget):
        return _error(status.HTTP_409_CONFLICT, "duplicate_budget", str(exc))

    @app.exception_handler(NotDue)
    def not_due_handler(request: Request, exc: NotDue):
        return _error(
            status.HTTP_409_CONFLICT,
            "not_due",
            str(exc),
            status="not_due",
            next_run_date=exc.next_run_date.isoformat(),
        )

    @app.exception_handler(ApplyConflict)
    def apply_conflict_handler(request: Request, exc: ApplyConflict):
        return _error(
            status.HTTP_409_CONFLICT,
            "apply_conflict",
            str(exc),
            rule_id=exc.rule_id,
            next_run_date=exc.next_run_date.isoformat(),
        )

    @app.exception_handler(PartialApply)
    def partial_apply_handler(request: Request, exc: PartialApply):
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "partial_apply", str(exc), rule_id=exc.rule_id
        )

    @app.exception_handler(ValueError)
    def bad_request_handler(request: Request, exc: ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, "invalid", str(exc))

    @app.exception_handler(Exception)
    def server_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled exception on %s %s", request.method, request.url.path)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "An unexpected error occurred."
        )


def create_app(cashbook: Cashbook | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or (cashbook.settings if cashbook else get_settings())
    init_logging(settings.log_level, settings.log_json)
    if cashbook is None:
        cashbook = Cashbook(CashbookStore(create_store_engine(settings.database_url)), settings)

    app = FastAPI(title="Cashbook")
    app.state.cashbook = cashbook
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_context_middleware)
    register_error_handlers(app)

    @app.on_event("startup")
    def init_db() -> None:
        cashbook.store.create_all()

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/accounts", response_model=list[AccountResponse])
    def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
        user_id = get_user_id(x_user_id)
        return [AccountResponse(**vars(account)) for account in cashbook.store.list_accounts(user_id)]

    @app.post("/accounts", response_model=AccountResponse)
    def create_account(
        payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> AccountResponse:
        user_id = get_user_id(x_user_id)
        payload = AccountPayload.validate_payload(payload)
        account = cashbook.store.create_account(user_id, payload.name, payload.currency)
        return AccountResponse(**vars(account))

    @app.get("/categories", response_model=list[CategoryResponse])
    def list_categories(
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[CategoryResponse]:
        user_id = get_user_id(x_user_id)
        return [CategoryResponse(**vars(category)) for category in cashbook.store.list_categories(user_id)]

    @app.post("/categories", response_model=CategoryResponse)
    def create_category(
        payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> CategoryResponse:
        user_id = get_user_id(x_user_id)
        payload = CategoryPayload.validate_payload(payload)
        category = cashbook.store.create_category(user_id, payload.name, payload.kind)
        return CategoryResponse(**vars(category))

    @app.get("/transactions", response_model=list[TransactionResponse])
    def list_transactions(
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[TransactionResponse]:
        user_id = get_user_id(x_user_id)
        return [TransactionResponse(**vars(txn)) for txn in cashbook.store.list_transactions(user_id)]

    @app.post("/transactions", response_model=TransactionResponse)
    def create_transaction(
        payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        payload = TransactionPayload.validate_payload(payload)
        txn = cashbook.store.create_transaction(user_id, payload.to_transaction())
        return TransactionResponse(**vars(txn))

    @app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
    def update_transaction(
        transaction_id: int,
        payload: TransactionPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        payload = TransactionPayload.validate_payload(payload)
        txn = cashbook.store.update_transaction(user_id, transaction_id, payload.to_transaction())
        return TransactionResponse(**vars(txn))

    @app.delete("/transactions/{transaction_id}")
    def delete_transaction(
        transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> dict:
        user_id = get_user_id(x_user_id)
        cashbook.store.delete_transaction(user_id, transaction_id)
        return {"status": "deleted"}

    @app.get("/budgets", response_model=list[BudgetResponse])
    def list_budgets(
        month: str | None = None,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[BudgetResponse]:
        user_id = get_user_id(x_user_id)
        target = parse_month_value(month) if month else None
        return [BudgetResponse(**vars(budget)) for budget in cashbook.store.list_budgets(user_id, target)]

    @app.post("/budgets", response_model=BudgetResponse)
    def create_budget(
        payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> BudgetResponse:
        user_id = get_user_id(x_user_id)
        budget = cashbook.create_budget(user_id, payload.to_budget())
        return BudgetResponse(**vars(budget))

    @app.put("/budgets/{budget_id}", response_model=BudgetResponse)
    def update_budget(
        budget_id: int,
        payload: BudgetPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> BudgetResponse:
        user_id = get_user_id(x_user_id)
        budget = cashbook.update_budget(user_id, budget_id, payload.to_budget())
        return BudgetResponse(**vars(budget))

    @app.delete("/budgets/{budget_id}")
    def delete_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
        user_id = get_user_id(x_user_id)
        cashbook.delete_budget(user_id, budget_id)
        return {"status": "deleted"}

    @app.get("/budgets/evaluation", response_model=BudgetEvaluationResponse)
    def evaluate_budgets(
        month: str = Query(...),
        chart_currency: str | None = None,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> BudgetEvaluationResponse:
        user_id = get_user_id(x_user_id)
        target = parse_month_value(month)
        chart = normalize_currency(chart_currency) if chart_currency else None
        report = cashbook.evaluate_budgets(user_id, target)
        return BudgetEvaluationResponse(
            month=target,
            statuses=[status_response(result, chart, cashbook, user_id) for result in report.statuses],
            events=[event_response(event) for event in report.events],
        )

    @app.get("/recurring-rules", response_model=list[RecurringRuleResponse])
    def list_recurring_rules(
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[RecurringRuleResponse]:
        user_id = get_user_id(x_user_id)
        return [RecurringRuleResponse(**vars(rule)) for rule in cashbook.store.list_rules(user_id)]

    @app.get("/recurring-rules/due", response_model=list[RecurringRuleResponse])
    def list_due_rules(
        reference_date: date | None = None,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[RecurringRuleResponse]:
        user_id = get_user_id(x_user_id)
        rules = cashbook.due_rules(user_id, reference_date or date.today())
        return [RecurringRuleResponse(**vars(rule)) for rule in rules]

    @app.post("/recurring-rules", response_model=RecurringRuleResponse)
    def create_recurring_rule(
        payload: RecurringRulePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> RecurringRuleResponse:
        user_id = get_user_id(x_user_id)
        payload = RecurringRulePayload.validate_payload(payload)
        rule = cashbook.store.create_rule(user_id, payload.to_rule())
        return RecurringRuleResponse(**vars(rule))

    @app.delete("/recurring-rules/{rule_id}")
    def delete_recurring_rule(
        rule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> dict:
        user_id = get_user_id(x_user_id)
        cashbook.store.delete_rule(user_id, rule_id)
        return {"status": "deleted"}

    @app.post("/recurring-rules/{rule_id}/apply", response_model=TransactionResponse)
    def apply_recurring_rule(
        rule_id: int,
        payload: ApplyRecurringPayload | None = None,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        reference_date = (payload.reference_date if payload else None) or date.today()
        txn = cashbook.apply_recurring(user_id, rule_id, reference_date)
        return TransactionResponse(**vars(txn))

    @app.get("/fx-rates", response_model=list[FxRateResponse])
    def list_fx_rates(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[FxRateResponse]:
        user_id = get_user_id(x_user_id)
        return [
            FxRateResponse(id=rate.id, base=rate.base, target=rate.target, rate=rate.rate)
            for rate in cashbook.store.list_fx_rates(user_id)
        ]

    @app.put("/fx-rates", response_model=FxRateResponse)
    def upsert_fx_rate(
        payload: FxRatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> FxRateResponse:
        user_id = get_user_id(x_user_id)
        rate = cashbook.upsert_fx_rate(user_id, payload.base, payload.target, payload.rate)
        return FxRateResponse(id=rate.id, base=rate.base, target=rate.target, rate=rate.rate)

    @app.delete("/fx-rates/{rate_id}")
    def delete_fx_rate(rate_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
        user_id = get_user_id(x_user_id)
        cashbook.store.delete_fx_rate(user_id, rate_id)
        return {"status": "deleted"}

    @app.get("/reports/totals", response_model=TotalsResponse)
    def report_totals(
        window: str = "lifetime",
        month: str | None = None,
        start: date | None = None,
        end: date | None = None,
        group_by: str = GROUP_BY_CURRENCY,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TotalsResponse:
        user_id = get_user_id(x_user_id)
        resolved = build_window(window, month, start, end)
        normalized_group = group_by.strip().lower()
        aggregation = cashbook.aggregate(user_id, resolved, normalized_group)
        return TotalsResponse(
            window=resolved.label,
            group_by=normalized_group,
            rows=totals_rows(aggregation, normalized_group),
            skipped=aggregation.skipped,
        )

    @app.get("/reports/category-breakdown", response_model=CategoryBreakdownResponse)
    def report_category_breakdown(
        window: str = "month",
        month: str | None = None,
        start: date | None = None,
        end: date | None = None,
        currency: str | None = None,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> CategoryBreakdownResponse:
        user_id = get_user_id(x_user_id)
        breakdown = cashbook.category_breakdown(
            user_id, build_window(window, month, start, end), currency
        )
        return CategoryBreakdownResponse(
            currency=breakdown.currency,
            shares=[
                CategoryShareResponse(category_id=share.category_id, name=share.name, amount=share.amount)
                for share in breakdown.shares
            ],
            approximate=breakdown.approximate,
            skipped=breakdown.skipped,
        )

    @app.get("/search", response_model=SearchResponse)
    def search_records(
        entity: str = "transactions",
        q: str | None = None,
        page: int = 0,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> SearchResponse:
        user_id = get_user_id(x_user_id)
        result = cashbook.search(user_id, entity, q, page)
        return SearchResponse(
            entity=entity,
            page=result.page,
            page_size=result.page_size,
            total_count=result.total_count,
            total_pages=result.total_pages,
            items=[vars(item) for item in result.items],
        )

    @app.get("/currency/convert", response_model=ConversionResponse)
    def convert_currency(
        amount: Decimal,
        source: str,
        target: str,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> ConversionResponse:
        user_id = get_user_id(x_user_id)
        result = cashbook.convert(amount, source, target, user_id)
        return ConversionResponse(
            amount=amount,
            source=result.source_currency,
            target=result.target_currency,
            converted=result.amount,
            path=result.path,
            approximate=result.approximate,
        )

    return app


app = create_app()
