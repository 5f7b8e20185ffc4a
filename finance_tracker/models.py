"""Domain models used by the finance_tracker backend.

The classes defined here are intentionally lightweight data containers that do
not know anything about persistence or transport concerns.  Field names match
the column names used by :mod:`finance_tracker.database`, so a decoded row can
be turned back into a model with ``Model(**row)``.  String values coming from
storage or JSON are coerced into the matching :class:`~enum.Enum` in
``__post_init__``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Type, TypeVar
from uuid import uuid4

E = TypeVar("E", bound=Enum)


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"


class RecurrenceType(str, Enum):
    FIXED = "FIXED"
    INSTALLMENT = "INSTALLMENT"


class BankAccountType(str, Enum):
    CHECKING = "CHECKING"
    INVESTMENT = "INVESTMENT"
    CASH = "CASH"


class DreCategory(str, Enum):
    """Income-statement lines a category can be mapped to."""

    GROSS_REVENUE = "DRE_GROSS_REVENUE"
    TAXES = "DRE_TAXES"
    COSTS = "DRE_COSTS"
    EXPENSE_PERSONNEL = "DRE_EXPENSE_PERSONNEL"
    EXPENSE_COMMERCIAL = "DRE_EXPENSE_COMMERCIAL"
    EXPENSE_ADMIN = "DRE_EXPENSE_ADMIN"
    FINANCIAL_INCOME = "DRE_FINANCIAL_INCOME"
    FINANCIAL_EXPENSE = "DRE_FINANCIAL_EXPENSE"


class InvestmentType(str, Enum):
    STOCK = "STOCK"
    REIT = "REIT"
    FIXED_INCOME = "FIXED_INCOME"
    CRYPTO = "CRYPTO"
    OTHER = "OTHER"


class InvestmentTransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    JCP = "JCP"

    @property
    def is_earning(self) -> bool:
        return self in (InvestmentTransactionType.DIVIDEND, InvestmentTransactionType.JCP)


class PaymentStatus(str, Enum):
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    SUSPENDED = "SUSPENDED"


class InvoiceStatus(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"


class BillingInterval(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMESTER = "SEMESTER"
    ANNUAL = "ANNUAL"


class AccountType(str, Enum):
    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"


class WebhookEventType(str, Enum):
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


def _coerce(value: object, enum_cls: Type[E]) -> Optional[E]:
    if value is None or isinstance(value, enum_cls):
        return value
    return enum_cls(value)


def new_id() -> str:
    return str(uuid4())


# ----------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Account:
    """Bank account whose balance follows PAID transactions."""

    user_id: str
    name: str
    balance: Decimal = Decimal("0.00")
    color: str = "gray"
    type: BankAccountType = BankAccountType.CHECKING
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, BankAccountType)


@dataclass(slots=True)
class Transaction:
    """A persisted ledger row.

    Rows created by one recurrence expansion share :attr:`group_id`.  A
    settlement of an earlier row points back to it through :attr:`parent_id`.
    """

    user_id: str
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
    installment_current: Optional[int] = None
    installment_total: Optional[int] = None
    group_id: Optional[str] = None
    parent_id: Optional[str] = None
    observation: Optional[str] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, TransactionType)
        self.status = _coerce(self.status, TransactionStatus)
        self.recurring_type = _coerce(self.recurring_type, RecurrenceType)


@dataclass(slots=True)
class TransactionDraft:
    """Create request for one logical transaction, before expansion."""

    user_id: str
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
    group_id: Optional[str] = None
    parent_id: Optional[str] = None
    observation: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, TransactionType)
        self.status = _coerce(self.status, TransactionStatus)
        self.recurring_type = _coerce(self.recurring_type, RecurrenceType)


@dataclass(slots=True)
class TransactionUpdate:
    """Edit request for a single persisted row.  Siblings are never touched."""

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

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, TransactionType)
        self.status = _coerce(self.status, TransactionStatus)


@dataclass(slots=True)
class FinancialSummary:
    total_balance: Decimal
    total_income: Decimal
    total_expense: Decimal
    pending_income: Decimal
    pending_expense: Decimal


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Category:
    user_id: str
    name: str
    type: TransactionType
    color: str = "gray"
    parent_id: Optional[str] = None
    dre_category: Optional[DreCategory] = None
    budget_limit: Optional[Decimal] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, TransactionType)
        self.dre_category = _coerce(self.dre_category, DreCategory)


@dataclass(slots=True)
class TreeNode:
    """A category placed in the display forest with its positional code."""

    category: Category
    code: str
    depth: int
    children: list["TreeNode"] = field(default_factory=list)


# ----------------------------------------------------------------------
# Investments
# ----------------------------------------------------------------------
@dataclass(slots=True)
class InvestmentAsset:
    user_id: str
    name: str
    type: InvestmentType
    ticker: Optional[str] = None
    quantity: Decimal = Decimal("0")
    average_price: Decimal = Decimal("0")
    current_price: Decimal = Decimal("0")
    version: int = 0
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, InvestmentType)


@dataclass(slots=True)
class InvestmentTransaction:
    user_id: str
    asset_id: str
    type: InvestmentTransactionType
    quantity: Decimal
    price: Decimal
    fees: Decimal
    total_amount: Decimal
    date: date
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.type = _coerce(self.type, InvestmentTransactionType)


# ----------------------------------------------------------------------
# Subscription and billing
# ----------------------------------------------------------------------
@dataclass(slots=True)
class SubscriptionState:
    """Billing fields of a user profile.

    :attr:`payment_status` is the field the webhook processor writes; views
    recompute the status from :attr:`expiration_date` on every read.
    """

    user_id: str
    expiration_date: date
    payment_status: PaymentStatus = PaymentStatus.PAID
    billing_attempts: int = 0
    subscription_price: Decimal = Decimal("0.00")
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    last_invoice_id: Optional[str] = None
    account_type: AccountType = AccountType.PERSONAL
    document: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        self.payment_status = _coerce(self.payment_status, PaymentStatus)
        self.billing_interval = _coerce(self.billing_interval, BillingInterval)
        self.account_type = _coerce(self.account_type, AccountType)


@dataclass(slots=True)
class Invoice:
    user_id: str
    amount: Decimal
    status: InvoiceStatus
    due_date: date
    reference_month: str
    paid_at: Optional[datetime] = None
    pdf_url: Optional[str] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.status = _coerce(self.status, InvoiceStatus)


@dataclass(slots=True)
class WebhookEvent:
    """Payment gateway notification."""

    event: WebhookEventType
    transaction_id: str
    user_id: str
    amount: Decimal = Decimal("0.00")
    gateway: str = "STRIPE"

    def __post_init__(self) -> None:
        self.event = _coerce(self.event, WebhookEventType)


# ----------------------------------------------------------------------
# Market data
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Quote:
    """Market quote for an asset."""

    symbol: str
    valuation_date: date
    price: Decimal
    currency: str
    source: str


__all__ = [
    "Account",
    "AccountType",
    "BankAccountType",
    "BillingInterval",
    "Category",
    "DreCategory",
    "FinancialSummary",
    "InvestmentAsset",
    "InvestmentTransaction",
    "InvestmentTransactionType",
    "InvestmentType",
    "Invoice",
    "InvoiceStatus",
    "PaymentStatus",
    "Quote",
    "RecurrenceType",
    "SubscriptionState",
    "Transaction",
    "TransactionDraft",
    "TransactionStatus",
    "TransactionType",
    "TransactionUpdate",
    "TreeNode",
    "WebhookEvent",
    "WebhookEventType",
    "new_id",
]
