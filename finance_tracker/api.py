"""FastAPI application exposing the finance_tracker backend."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import load_config
from .database import SQLiteRepository
from .errors import (
    FinanceTrackerError,
    IntegrityError,
    PartialBatchError,
    PersistenceError,
    RecordNotFoundError,
    StateConflictError,
    ValidationError,
)
from .models import (
    Account,
    AccountType,
    BankAccountType,
    BillingInterval,
    Category,
    DreCategory,
    InvestmentAsset,
    InvestmentTransactionType,
    InvestmentType,
    PaymentStatus,
    RecurrenceType,
    SubscriptionState,
    TransactionDraft,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
    TreeNode,
    WebhookEvent,
    WebhookEventType,
)
from .price_service import PriceService
from .reports import AccountingBasis
from .services import (
    AccountService,
    CategoryService,
    InvestmentService,
    LedgerService,
    ReportService,
    SubscriptionService,
)

logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (ValidationError, 422),
    (RecordNotFoundError, 404),
    (StateConflictError, 409),
    (IntegrityError, 409),
    (PartialBatchError, 502),
    (PersistenceError, 503),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Initialise shared services once and reuse them across requests."""

    config = load_config()
    repository = SQLiteRepository(config.database_file)
    repository.initialise_schema()
    price_service = PriceService(config)

    app.state.config = config
    app.state.repository = repository
    app.state.accounts = AccountService(repository)
    app.state.ledger = LedgerService(config, repository)
    app.state.categories = CategoryService(repository)
    app.state.subscriptions = SubscriptionService(config, repository)
    app.state.investments = InvestmentService(repository, price_service)
    app.state.reports = ReportService(repository)

    yield

    repository.close()


app = FastAPI(lifespan=lifespan, title="finance_tracker backend", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FinanceTrackerError)
async def domain_error_handler(_: Request, exc: FinanceTrackerError) -> JSONResponse:
    status_code = next((code for kind, code in _STATUS_CODES if isinstance(exc, kind)), 500)
    if status_code >= 500:
        logger.error("Request failed: %s", exc)
    elif isinstance(exc, StateConflictError):
        logger.warning("Rejected concurrent write: %s", exc)
    return JSONResponse(status_code=status_code, content=exc.to_payload())


# Dependency injection ------------------------------------------------------

def get_user_id(x_user_id: Annotated[str, Header(min_length=1)]) -> str:
    return x_user_id


def get_accounts() -> AccountService:
    return app.state.accounts


def get_ledger() -> LedgerService:
    return app.state.ledger


def get_categories() -> CategoryService:
    return app.state.categories


def get_subscriptions() -> SubscriptionService:
    return app.state.subscriptions


def get_investments() -> InvestmentService:
    return app.state.investments


def get_reports() -> ReportService:
    return app.state.reports


UserId = Annotated[str, Depends(get_user_id)]


# Money leaves the API as exact decimal strings, e.g. "33.34".
_payload = partial(jsonable_encoder, custom_encoder={Decimal: str})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tree_payload(nodes: list[TreeNode]) -> list[dict[str, object]]:
    return [
        {
            **_payload(node.category),
            "code": node.code,
            "depth": node.depth,
            "children": _tree_payload(node.children),
        }
        for node in nodes
    ]


# Request bodies ------------------------------------------------------------


class AccountBody(BaseModel):
    name: str
    balance: Decimal = Decimal("0.00")
    color: str = "gray"
    type: BankAccountType = BankAccountType.CHECKING


class TransactionCreate(BaseModel):
    id: Optional[str] = None
    description: str
    amount: Decimal
    date: date
    type: TransactionType
    account_id: str
    status: TransactionStatus = TransactionStatus.PENDING
    category_id: Optional[str] = None
    to_account_id: Optional[str] = None
    payment_date: Optional[date] = None
    is_recurring: bool = False
    recurring_type: Optional[RecurrenceType] = None
    recurrence_count: Optional[int] = None
    observation: Optional[str] = None


class TransactionEdit(BaseModel):
    description: str
    amount: Decimal
    date: date
    type: TransactionType
    account_id: str
    status: TransactionStatus
    category_id: Optional[str] = None
    to_account_id: Optional[str] = None
    payment_date: Optional[date] = None
    observation: Optional[str] = None


class ResetRequest(BaseModel):
    delete_categories: bool = False


class SettlementCreate(BaseModel):
    amount: Decimal
    payment_date: date
    description: Optional[str] = None


class CategoryBody(BaseModel):
    name: str
    type: TransactionType
    color: str = "gray"
    parent_id: Optional[str] = None
    dre_category: Optional[DreCategory] = None
    budget_limit: Optional[Decimal] = None


class SubscriptionCreate(BaseModel):
    expiration_date: date
    subscription_price: Decimal = Decimal("0.00")
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    payment_status: PaymentStatus = PaymentStatus.PAID
    account_type: AccountType = AccountType.PERSONAL
    document: Optional[str] = None


class ProfileUpdate(BaseModel):
    account_type: AccountType
    document: str


class PaymentWebhook(BaseModel):
    event: WebhookEventType
    transaction_id: str = Field(alias="transactionId")
    user_id: str = Field(alias="userId")
    amount: Decimal = Decimal("0.00")
    gateway: str = "STRIPE"

    model_config = {"populate_by_name": True}


class AssetCreate(BaseModel):
    name: str
    type: InvestmentType
    ticker: Optional[str] = None
    current_price: Decimal = Decimal("0")


class InvestmentTransactionCreate(BaseModel):
    asset_id: str
    type: InvestmentTransactionType
    price: Decimal
    date: date
    quantity: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")


# Routes --------------------------------------------------------------------


@app.get("/health")
def health_check() -> dict[str, str]:
    """Return a basic heartbeat payload for monitoring purposes."""

    return {"status": "ok"}


# Accounts


@app.post("/accounts", status_code=201)
def create_account(
    body: AccountBody,
    user_id: UserId,
    accounts: Annotated[AccountService, Depends(get_accounts)],
) -> dict[str, object]:
    account = accounts.create(Account(user_id=user_id, **body.model_dump()))
    return _payload(account)


@app.get("/accounts")
def list_accounts(
    user_id: UserId,
    accounts: Annotated[AccountService, Depends(get_accounts)],
) -> dict[str, object]:
    items = [_payload(account) for account in accounts.list(user_id)]
    return {"accounts": items, "count": len(items)}


@app.put("/accounts/{account_id}")
def update_account(
    account_id: str,
    body: AccountBody,
    user_id: UserId,
    accounts: Annotated[AccountService, Depends(get_accounts)],
) -> dict[str, object]:
    return _payload(accounts.update(Account(user_id=user_id, id=account_id, **body.model_dump())))


@app.post("/reset")
def reset_user_data(
    body: ResetRequest,
    user_id: UserId,
    accounts: Annotated[AccountService, Depends(get_accounts)],
) -> dict[str, object]:
    """Delete every transaction and zero balances; optionally drop categories."""

    return accounts.reset_user_data(user_id, body.delete_categories)


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: str,
    user_id: UserId,
    accounts: Annotated[AccountService, Depends(get_accounts)],
) -> None:
    accounts.delete(user_id, account_id)


# Transactions


@app.post("/transactions", status_code=201)
def create_transaction(
    body: TransactionCreate,
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
) -> dict[str, object]:
    """Create a transaction; recurring drafts expand into a dated series."""

    anchor = ledger.create_transaction(TransactionDraft(user_id=user_id, **body.model_dump()))
    return _payload(anchor)


@app.get("/transactions")
def list_transactions(
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
    group_id: Annotated[Optional[str], Query()] = None,
) -> dict[str, object]:
    items = [_payload(tx) for tx in ledger.list_transactions(user_id, group_id)]
    return {"transactions": items, "count": len(items)}


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    body: TransactionEdit,
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
) -> dict[str, object]:
    updated = ledger.update_transaction(user_id, transaction_id, TransactionUpdate(**body.model_dump()))
    return _payload(updated)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str,
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
) -> None:
    ledger.delete_transaction(user_id, transaction_id)


@app.delete("/transaction-groups/{group_id}")
def delete_transaction_group(
    group_id: str,
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
) -> dict[str, object]:
    return {"group_id": group_id, "deleted": ledger.delete_group(user_id, group_id)}


@app.post("/transactions/{transaction_id}/settle", status_code=201)
def settle_transaction(
    transaction_id: str,
    body: SettlementCreate,
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
) -> dict[str, object]:
    settlement = ledger.settle_transaction(
        user_id, transaction_id, body.amount, body.payment_date, body.description
    )
    return _payload(settlement)


@app.get("/summary")
def financial_summary(
    user_id: UserId,
    ledger: Annotated[LedgerService, Depends(get_ledger)],
) -> dict[str, object]:
    return _payload(ledger.financial_summary(user_id))


# Categories


@app.post("/categories", status_code=201)
def create_category(
    body: CategoryBody,
    user_id: UserId,
    categories: Annotated[CategoryService, Depends(get_categories)],
) -> dict[str, object]:
    return _payload(categories.create(Category(user_id=user_id, **body.model_dump())))


@app.get("/categories/tree")
def category_tree(
    type: Annotated[TransactionType, Query()],
    user_id: UserId,
    categories: Annotated[CategoryService, Depends(get_categories)],
) -> dict[str, object]:
    return {"type": type.value, "tree": _tree_payload(categories.forest(user_id, type))}


@app.get("/categories/parent-options")
def category_parent_options(
    type: Annotated[TransactionType, Query()],
    user_id: UserId,
    categories: Annotated[CategoryService, Depends(get_categories)],
    editing_id: Annotated[Optional[str], Query()] = None,
) -> dict[str, object]:
    options = categories.parent_options(user_id, type, editing_id)
    return {
        "options": [
            {"id": node.category.id, "name": node.category.name, "code": node.code, "depth": node.depth}
            for node in options
        ]
    }


@app.get("/categories/budget")
def category_budget(
    month: Annotated[str, Query(pattern=r"^\d{4}-\d{2}$")],
    user_id: UserId,
    categories: Annotated[CategoryService, Depends(get_categories)],
) -> dict[str, object]:
    usage = categories.budget(user_id, date.fromisoformat(f"{month}-01"))
    return {"month": month, "categories": _payload(usage)}


@app.put("/categories/{category_id}")
def update_category(
    category_id: str,
    body: CategoryBody,
    user_id: UserId,
    categories: Annotated[CategoryService, Depends(get_categories)],
) -> dict[str, object]:
    updated = categories.update(Category(user_id=user_id, id=category_id, **body.model_dump()))
    return _payload(updated)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: str,
    user_id: UserId,
    categories: Annotated[CategoryService, Depends(get_categories)],
) -> None:
    categories.delete(user_id, category_id)


# Subscription and billing


@app.post("/subscription", status_code=201)
def register_subscription(
    body: SubscriptionCreate,
    user_id: UserId,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscriptions)],
) -> dict[str, object]:
    state = subscriptions.register(SubscriptionState(user_id=user_id, **body.model_dump()))
    return _payload(state)


@app.get("/subscription/status")
def subscription_status(
    user_id: UserId,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscriptions)],
) -> dict[str, object]:
    result = subscriptions.status(user_id, _utcnow())
    return {"status": result.status.value, "days_overdue": result.days_overdue}


@app.post("/subscription/sync")
def sync_subscription_status(
    user_id: UserId,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscriptions)],
) -> dict[str, object]:
    result = subscriptions.sync_status(user_id, _utcnow())
    return {"status": result.status.value, "days_overdue": result.days_overdue}


@app.put("/subscription/profile")
def update_profile(
    body: ProfileUpdate,
    user_id: UserId,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscriptions)],
) -> dict[str, object]:
    return _payload(subscriptions.update_profile(user_id, body.account_type, body.document))


@app.get("/invoices")
def list_invoices(
    user_id: UserId,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscriptions)],
) -> dict[str, object]:
    items = [_payload(invoice) for invoice in subscriptions.invoices(user_id)]
    return {"invoices": items, "count": len(items)}


@app.post("/webhooks/payment")
def payment_webhook(
    body: PaymentWebhook,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscriptions)],
) -> dict[str, object]:
    """Gateway callback; the subscriber is identified by the payload."""

    result = subscriptions.process_webhook(WebhookEvent(**body.model_dump()), _utcnow())
    return {
        "subscription": _payload(result.state),
        "invoice": _payload(result.invoice) if result.invoice else None,
    }


# Investments


@app.post("/investments/assets", status_code=201)
def create_asset(
    body: AssetCreate,
    user_id: UserId,
    investments: Annotated[InvestmentService, Depends(get_investments)],
) -> dict[str, object]:
    return _payload(investments.create_asset(InvestmentAsset(user_id=user_id, **body.model_dump())))


@app.get("/investments/assets")
def list_assets(
    user_id: UserId,
    investments: Annotated[InvestmentService, Depends(get_investments)],
) -> dict[str, object]:
    items = [_payload(asset) for asset in investments.list_assets(user_id)]
    return {"assets": items, "count": len(items)}


@app.post("/investments/transactions", status_code=201)
def record_investment_transaction(
    body: InvestmentTransactionCreate,
    user_id: UserId,
    investments: Annotated[InvestmentService, Depends(get_investments)],
) -> dict[str, object]:
    transaction, asset = investments.record_transaction(
        user_id,
        body.asset_id,
        body.type,
        body.price,
        body.date,
        quantity=body.quantity,
        fees=body.fees,
    )
    return {"transaction": _payload(transaction), "asset": _payload(asset)}


@app.post("/investments/assets/{asset_id}/refresh-price")
def refresh_asset_price(
    asset_id: str,
    user_id: UserId,
    investments: Annotated[InvestmentService, Depends(get_investments)],
) -> dict[str, object]:
    asset = investments.refresh_price(user_id, asset_id)
    if asset is None:
        raise HTTPException(status_code=503, detail="Quote unavailable. Check the market data API keys.")
    return _payload(asset)


@app.get("/investments/summary")
def investment_summary(
    user_id: UserId,
    investments: Annotated[InvestmentService, Depends(get_investments)],
) -> dict[str, object]:
    portfolio, earnings = investments.summary(user_id)
    return {**_payload(portfolio), "earnings": _payload(earnings)}


# Reports


@app.get("/reports/dre")
def dre_report(
    month: Annotated[str, Query(pattern=r"^\d{4}-\d{2}$")],
    user_id: UserId,
    reports: Annotated[ReportService, Depends(get_reports)],
    basis: Annotated[AccountingBasis, Query()] = AccountingBasis.COMPETENCE,
) -> dict[str, object]:
    statement = reports.dre(user_id, month, basis)
    return {
        "month": month,
        "basis": basis.value,
        **_payload(statement),
        "vertical_analysis": _payload(statement.vertical_breakdown()),
    }


@app.get("/reports/monthly")
def monthly_report(
    month: Annotated[str, Query(pattern=r"^\d{4}-\d{2}$")],
    user_id: UserId,
    reports: Annotated[ReportService, Depends(get_reports)],
) -> dict[str, object]:
    return {"month": month, **_payload(reports.monthly(user_id, month))}
