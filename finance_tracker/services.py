"""High-level application services orchestrating the finance_tracker backend.

Each service pairs one pure engine with the repository.  Every call takes the
acting ``user_id`` explicitly; nothing here reads an ambient "current user".
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional, Sequence, Type, TypeVar

from .categories import budget_usage, build_forest, check_parent, parent_options
from .config import AppConfig
from .database import Repository
from .errors import (
    IntegrityError,
    PartialBatchError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from .investments import (
    PortfolioSummary,
    apply_transaction,
    build_investment_transaction,
    earnings_summary,
    portfolio_summary,
)
from .ledger import (
    apply_update,
    balance_deltas,
    build_settlement,
    expand,
    is_fully_settled,
    merge_deltas,
    summarize,
    validate_draft,
)
from .models import (
    Account,
    AccountType,
    Category,
    FinancialSummary,
    InvestmentAsset,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
    Invoice,
    SubscriptionState,
    Transaction,
    TransactionDraft,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
    TreeNode,
    WebhookEvent,
)
from .price_service import PriceService
from .reports import AccountingBasis, DreStatement, MonthlyTotals, dre_statement, monthly_totals
from .subscription import StatusResult, determine_status, validate_document
from .webhooks import WebhookResult, handle_event

logger = logging.getLogger(__name__)

M = TypeVar("M")


def _load(model: Type[M], rows: Sequence[dict[str, object]]) -> list[M]:
    return [model(**row) for row in rows]


def _record(instance: object, *exclude: str) -> dict[str, object]:
    record = asdict(instance)
    for name in exclude:
        record.pop(name, None)
    return record


class AccountService:
    """Bank accounts owned by a user."""

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    def create(self, account: Account) -> Account:
        if not account.name or not account.name.strip():
            raise ValidationError("name", "must not be blank")
        self._repository.create("accounts", _record(account))
        logger.info("Created account %s for user %s", account.id, account.user_id)
        return account

    def update(self, account: Account) -> Account:
        """Save name, colour, type and a manually corrected balance."""

        if not account.name or not account.name.strip():
            raise ValidationError("name", "must not be blank")
        self._repository.update("accounts", account.user_id, account.id, _record(account, "id", "user_id"))
        logger.info("Updated account %s for user %s", account.id, account.user_id)
        return account

    def list(self, user_id: str) -> list[Account]:
        return _load(Account, self._repository.query("accounts", user_id, order_by="name"))

    def get(self, user_id: str, account_id: str) -> Account:
        return Account(**self._repository.get("accounts", user_id, account_id))

    def delete(self, user_id: str, account_id: str) -> None:
        referencing = self._repository.query("transactions", user_id, {"account_id": account_id})
        referencing += self._repository.query("transactions", user_id, {"to_account_id": account_id})
        if referencing:
            raise IntegrityError("accounts", account_id, f"{len(referencing)} transaction(s) reference it")
        self._repository.delete("accounts", user_id, account_id)
        logger.info("Deleted account %s for user %s", account_id, user_id)

    def reset_user_data(self, user_id: str, delete_categories: bool = False) -> dict[str, int]:
        """Start over: drop every transaction and zero every account balance.

        Accounts are kept.  Categories go too when ``delete_categories`` is set.
        """

        with self._repository.atomic():
            transactions = self._repository.query("transactions", user_id)
            accounts = self._repository.query("accounts", user_id)
            categories = self._repository.query("categories", user_id) if delete_categories else []
            for row in transactions:
                self._repository.delete("transactions", user_id, row["id"])
            for row in accounts:
                self._repository.update("accounts", user_id, row["id"], {"balance": Decimal("0.00")})
            for row in categories:
                self._repository.delete("categories", user_id, row["id"])
        logger.warning(
            "Reset data for user %s: %d transaction(s), %d category row(s) removed",
            user_id,
            len(transactions),
            len(categories),
        )
        return {
            "transactions_deleted": len(transactions),
            "accounts_zeroed": len(accounts),
            "categories_deleted": len(categories),
        }


class LedgerService:
    """Creates, edits and deletes ledger rows and keeps balances in step."""

    def __init__(self, config: AppConfig, repository: Repository) -> None:
        self._config = config
        self._repository = repository

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_transaction(self, draft: TransactionDraft) -> Transaction:
        """Validate, expand and persist ``draft``; return the anchor row.

        The whole group is written as one batch.  With a repository that can
        only write row by row, a failure part way raises
        :class:`PartialBatchError` naming the rows already written.
        """

        validate_draft(draft, self._config.max_installments)
        self._check_references(draft.user_id, draft.account_id, draft.to_account_id, draft.category_id)

        records = expand(draft, self._config.fixed_recurrence_months)
        if self._repository.supports_batch:
            deltas = merge_deltas(balance_deltas(record) for record in records)
            with self._repository.atomic():
                self._repository.create_batch("transactions", [_record(record) for record in records])
                self._apply_deltas(draft.user_id, deltas)
        else:
            self._create_row_by_row(records)

        anchor = records[0]
        if len(records) > 1:
            logger.info(
                "Expanded %s transaction %s into %d rows (group %s)",
                anchor.recurring_type.value,
                anchor.id,
                len(records),
                anchor.group_id,
            )
        else:
            logger.info("Created transaction %s for user %s", anchor.id, anchor.user_id)
        return anchor

    def _create_row_by_row(self, records: Sequence[Transaction]) -> None:
        # Each row lands together with its balance movement, so the written
        # prefix can be compensated with ordinary deletes.
        written: list[str] = []
        for index, record in enumerate(records):
            try:
                with self._repository.atomic():
                    self._repository.create("transactions", _record(record))
                    self._apply_deltas(record.user_id, balance_deltas(record))
            except PersistenceError as exc:
                if not written:
                    raise
                logger.warning(
                    "Batch for group %s stopped at row %d; %d row(s) written",
                    record.group_id,
                    index,
                    len(written),
                )
                raise PartialBatchError("transactions", written, index) from exc
            written.append(record.id)

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------
    def update_transaction(self, user_id: str, transaction_id: str, update: TransactionUpdate) -> Transaction:
        """Edit one row.  Other members of its group are left untouched."""

        existing = self.get_transaction(user_id, transaction_id)
        updated = apply_update(existing, update)
        self._check_references(user_id, updated.account_id, updated.to_account_id, updated.category_id)

        # Money of a settled row moves through its settlement rows.
        if self._has_settlements(user_id, transaction_id):
            deltas = {}
        else:
            deltas = merge_deltas([balance_deltas(existing, sign=-1), balance_deltas(updated)])

        with self._repository.atomic():
            self._repository.update(
                "transactions",
                user_id,
                transaction_id,
                _record(updated, "id", "user_id"),
            )
            self._apply_deltas(user_id, deltas)
            if existing.parent_id is not None:
                self._sync_parent_status(user_id, existing.parent_id)
        logger.info("Updated transaction %s for user %s", transaction_id, user_id)
        return updated

    def settle_transaction(
        self,
        user_id: str,
        transaction_id: str,
        amount: Decimal,
        payment_date: date,
        description: Optional[str] = None,
    ) -> Transaction:
        """Record a (partial) payment of a PENDING row.

        Once the settlements reach the original amount the parent is marked
        PAID as well.
        """

        parent = self.get_transaction(user_id, transaction_id)
        settlement = build_settlement(parent, amount, payment_date, description)

        with self._repository.atomic():
            self._repository.create("transactions", _record(settlement))
            self._apply_deltas(user_id, balance_deltas(settlement))
            self._sync_parent_status(user_id, parent.id)
        return settlement

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete_transaction(self, user_id: str, transaction_id: str) -> None:
        existing = self.get_transaction(user_id, transaction_id)
        if self._has_settlements(user_id, transaction_id):
            raise IntegrityError("transactions", transaction_id, "delete its settlements first")

        with self._repository.atomic():
            self._repository.delete("transactions", user_id, transaction_id)
            self._apply_deltas(user_id, balance_deltas(existing, sign=-1))
            if existing.parent_id is not None:
                self._sync_parent_status(user_id, existing.parent_id)
        logger.info("Deleted transaction %s for user %s", transaction_id, user_id)

    def delete_group(self, user_id: str, group_id: str) -> int:
        """Delete every row of a recurrence group in one transaction."""

        members = _load(Transaction, self._repository.query("transactions", user_id, {"group_id": group_id}))
        if not members:
            raise RecordNotFoundError("transaction_groups", group_id)
        for member in members:
            if self._has_settlements(user_id, member.id):
                raise IntegrityError("transactions", member.id, "delete its settlements first")

        deltas = merge_deltas(balance_deltas(member, sign=-1) for member in members)
        with self._repository.atomic():
            for member in members:
                self._repository.delete("transactions", user_id, member.id)
            self._apply_deltas(user_id, deltas)
        logger.info("Deleted group %s (%d rows) for user %s", group_id, len(members), user_id)
        return len(members)

    def _sync_parent_status(self, user_id: str, parent_id: str) -> None:
        """Mark ``parent_id`` PAID when its settlements cover it, else PENDING."""

        parent = self.get_transaction(user_id, parent_id)
        children = self._children(user_id, parent_id)
        if is_fully_settled(parent, children):
            if parent.status is not TransactionStatus.PAID:
                last_payment = max(
                    (child.payment_date for child in children if child.status is TransactionStatus.PAID),
                    default=None,
                )
                self._repository.update(
                    "transactions",
                    user_id,
                    parent_id,
                    {"status": TransactionStatus.PAID, "payment_date": last_payment},
                )
                logger.info("Transaction %s fully settled", parent_id)
        elif parent.status is TransactionStatus.PAID:
            self._repository.update(
                "transactions",
                user_id,
                parent_id,
                {"status": TransactionStatus.PENDING, "payment_date": None},
            )
            logger.info("Transaction %s reopened", parent_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        return Transaction(**self._repository.get("transactions", user_id, transaction_id))

    def list_transactions(self, user_id: str, group_id: Optional[str] = None) -> list[Transaction]:
        filters = {"group_id": group_id} if group_id else None
        return _load(Transaction, self._repository.query("transactions", user_id, filters, order_by="date"))

    def financial_summary(self, user_id: str) -> FinancialSummary:
        accounts = _load(Account, self._repository.query("accounts", user_id))
        total_balance = sum((account.balance for account in accounts), Decimal("0"))
        return summarize(self.list_transactions(user_id), total_balance)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _children(self, user_id: str, parent_id: str) -> list[Transaction]:
        return _load(Transaction, self._repository.query("transactions", user_id, {"parent_id": parent_id}))

    def _has_settlements(self, user_id: str, transaction_id: str) -> bool:
        return bool(self._repository.query("transactions", user_id, {"parent_id": transaction_id}))

    def _check_references(
        self,
        user_id: str,
        account_id: str,
        to_account_id: Optional[str],
        category_id: Optional[str],
    ) -> None:
        for field, record_id, collection, label in (
            ("account_id", account_id, "accounts", "account"),
            ("to_account_id", to_account_id, "accounts", "account"),
            ("category_id", category_id, "categories", "category"),
        ):
            if record_id is None:
                continue
            try:
                self._repository.get(collection, user_id, record_id)
            except RecordNotFoundError:
                raise ValidationError(field, f"unknown {label} {record_id!r}") from None

    def _apply_deltas(self, user_id: str, deltas: dict[str, Decimal]) -> None:
        for account_id, delta in deltas.items():
            self._repository.increment("accounts", user_id, account_id, "balance", delta)


class CategoryService:
    """Category CRUD with cycle prevention and referential checks."""

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    def list(self, user_id: str, type: Optional[TransactionType] = None) -> list[Category]:
        filters = {"type": TransactionType(type)} if type else None
        return _load(Category, self._repository.query("categories", user_id, filters))

    def get(self, user_id: str, category_id: str) -> Category:
        return Category(**self._repository.get("categories", user_id, category_id))

    def create(self, category: Category) -> Category:
        self._validate(category)
        check_parent(self.list(category.user_id), category.type, category.parent_id)
        self._repository.create("categories", _record(category))
        logger.info("Created category %s for user %s", category.id, category.user_id)
        return category

    def update(self, category: Category) -> Category:
        """Save edits, including a move to a new parent.

        The new parent may not be the category itself or any descendant.
        """

        existing = self.get(category.user_id, category.id)
        self._validate(category)
        categories = self.list(category.user_id)
        check_parent(categories, category.type, category.parent_id, category_id=category.id)
        if category.type is not existing.type and any(c.parent_id == category.id for c in categories):
            raise ValidationError("type", "cannot change the type of a category with subcategories")

        self._repository.update("categories", category.user_id, category.id, _record(category, "id", "user_id"))
        logger.info("Updated category %s for user %s", category.id, category.user_id)
        return category

    def delete(self, user_id: str, category_id: str) -> None:
        """Delete a leaf category that no transaction references."""

        self.get(user_id, category_id)
        children = self._repository.query("categories", user_id, {"parent_id": category_id})
        if children:
            raise IntegrityError("categories", category_id, f"{len(children)} subcategory(ies) still attached")
        referencing = self._repository.query("transactions", user_id, {"category_id": category_id})
        if referencing:
            raise IntegrityError("categories", category_id, f"{len(referencing)} transaction(s) reference it")
        self._repository.delete("categories", user_id, category_id)
        logger.info("Deleted category %s for user %s", category_id, user_id)

    def forest(self, user_id: str, type: TransactionType) -> list[TreeNode]:
        return build_forest(self.list(user_id), type)

    def parent_options(
        self,
        user_id: str,
        type: TransactionType,
        editing_id: Optional[str] = None,
    ) -> list[TreeNode]:
        return parent_options(self.list(user_id), type, editing_id)

    def budget(self, user_id: str, month: date) -> list[dict[str, object]]:
        transactions = _load(Transaction, self._repository.query("transactions", user_id))
        return budget_usage(self.list(user_id), transactions, month)

    @staticmethod
    def _validate(category: Category) -> None:
        if not category.name or not category.name.strip():
            raise ValidationError("name", "must not be blank")
        if category.type is TransactionType.TRANSFER:
            raise ValidationError("type", "categories are INCOME or EXPENSE")
        if category.budget_limit is not None and category.budget_limit < 0:
            raise ValidationError("budget_limit", "must not be negative")


class SubscriptionService:
    """Subscription status views and payment webhook handling."""

    def __init__(self, config: AppConfig, repository: Repository) -> None:
        self._config = config
        self._repository = repository

    def register(self, state: SubscriptionState) -> SubscriptionState:
        if state.document is not None and not validate_document(state.document, state.account_type):
            raise ValidationError("document", f"invalid document for a {state.account_type.value} account")
        if state.subscription_price < 0:
            raise ValidationError("subscription_price", "must not be negative")
        self._repository.create("subscriptions", _record(state))
        logger.info("Registered subscription for user %s", state.user_id)
        return state

    def get(self, user_id: str) -> SubscriptionState:
        return SubscriptionState(**self._repository.get("subscriptions", user_id, user_id))

    def status(self, user_id: str, now: datetime) -> StatusResult:
        """Derive the status from the dates; nothing is written."""

        state = self.get(user_id)
        return determine_status(now, state.expiration_date, state.payment_status, self._config.grace_days)

    def sync_status(self, user_id: str, now: datetime) -> StatusResult:
        """Persist the derived status when it differs from the stored one."""

        state = self.get(user_id)
        result = determine_status(now, state.expiration_date, state.payment_status, self._config.grace_days)
        if result.status is not state.payment_status:
            self._repository.update(
                "subscriptions",
                user_id,
                user_id,
                {"payment_status": result.status},
                expected_version=state.version,
            )
            logger.info(
                "Subscription of user %s moved %s -> %s",
                user_id,
                state.payment_status.value,
                result.status.value,
            )
        return result

    def process_webhook(self, event: WebhookEvent, now: datetime) -> WebhookResult:
        """Apply a gateway event and store the resulting state and invoice.

        The state write is conditional on the version that was read, so two
        concurrent deliveries cannot both advance the expiration date; the
        loser gets :class:`~finance_tracker.errors.StateConflictError`.
        """

        state = self.get(event.user_id)
        result = handle_event(event, state, now)
        if result.state is state:
            logger.info("Ignoring duplicate %s for user %s (%s)", event.event.value, event.user_id, event.transaction_id)
            return result

        with self._repository.atomic():
            self._repository.update(
                "subscriptions",
                state.user_id,
                state.user_id,
                _record(result.state, "user_id", "version"),
                expected_version=state.version,
            )
            if result.invoice is not None:
                self._repository.create("invoices", _record(result.invoice))

        if result.invoice is not None:
            logger.info(
                "Payment %s received for user %s; expiration %s -> %s, invoice %s",
                event.transaction_id,
                state.user_id,
                state.expiration_date,
                result.state.expiration_date,
                result.invoice.id,
            )
        else:
            logger.warning(
                "Payment failed for user %s (attempt %d)",
                state.user_id,
                result.state.billing_attempts,
            )
        return WebhookResult(replace(result.state, version=state.version + 1), result.invoice)

    def invoices(self, user_id: str) -> list[Invoice]:
        return _load(Invoice, self._repository.query("invoices", user_id, order_by="-due_date"))

    def update_profile(self, user_id: str, account_type: AccountType, document: str) -> SubscriptionState:
        account_type = AccountType(account_type)
        if not validate_document(document, account_type):
            raise ValidationError("document", f"invalid document for a {account_type.value} account")
        state = self.get(user_id)
        self._repository.update(
            "subscriptions",
            user_id,
            user_id,
            {"account_type": account_type, "document": document},
            expected_version=state.version,
        )
        return replace(state, account_type=account_type, document=document, version=state.version + 1)


class InvestmentService:
    """Investment assets and the transactions that move their positions.

    Position updates are serialised per asset inside this process and written
    with a versioned conditional update, so a concurrent writer elsewhere
    surfaces as :class:`~finance_tracker.errors.StateConflictError` instead of
    a corrupted average price.
    """

    def __init__(self, repository: Repository, price_service: Optional[PriceService] = None) -> None:
        self._repository = repository
        self._price_service = price_service
        # asset id -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _asset_lock(self, asset_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.setdefault(asset_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[asset_id]

    def create_asset(self, asset: InvestmentAsset) -> InvestmentAsset:
        if not asset.name or not asset.name.strip():
            raise ValidationError("name", "must not be blank")
        if asset.quantity < 0:
            raise ValidationError("quantity", "must not be negative")
        self._repository.create("investment_assets", _record(asset))
        logger.info("Created asset %s (%s) for user %s", asset.id, asset.ticker or asset.name, asset.user_id)
        return asset

    def get_asset(self, user_id: str, asset_id: str) -> InvestmentAsset:
        return InvestmentAsset(**self._repository.get("investment_assets", user_id, asset_id))

    def list_assets(self, user_id: str) -> list[InvestmentAsset]:
        return _load(InvestmentAsset, self._repository.query("investment_assets", user_id, order_by="name"))

    def list_transactions(self, user_id: str, asset_id: Optional[str] = None) -> list[InvestmentTransaction]:
        filters = {"asset_id": asset_id} if asset_id else None
        return _load(
            InvestmentTransaction,
            self._repository.query("investment_transactions", user_id, filters, order_by="date"),
        )

    def record_transaction(
        self,
        user_id: str,
        asset_id: str,
        type: InvestmentTransactionType,
        price: Decimal,
        transaction_date: date,
        quantity: Decimal = Decimal("0"),
        fees: Decimal = Decimal("0"),
    ) -> tuple[InvestmentTransaction, InvestmentAsset]:
        transaction = build_investment_transaction(
            user_id, asset_id, type, price, transaction_date, quantity=quantity, fees=fees
        )
        with self._asset_lock(asset_id):
            asset = self.get_asset(user_id, asset_id)
            updated = apply_transaction(asset, transaction)
            with self._repository.atomic():
                self._repository.create("investment_transactions", _record(transaction))
                if updated is not asset:
                    self._repository.update(
                        "investment_assets",
                        user_id,
                        asset_id,
                        {"quantity": updated.quantity, "average_price": updated.average_price},
                        expected_version=asset.version,
                    )
                    updated = replace(updated, version=asset.version + 1)
        logger.info(
            "Recorded %s on asset %s: quantity %s, average price %s",
            transaction.type.value,
            asset_id,
            updated.quantity,
            updated.average_price,
        )
        return transaction, updated

    def refresh_price(self, user_id: str, asset_id: str) -> Optional[InvestmentAsset]:
        """Mark an asset to market; ``None`` when no quote is available."""

        if self._price_service is None:
            return None
        with self._asset_lock(asset_id):
            asset = self.get_asset(user_id, asset_id)
            symbol = asset.ticker or asset.name
            if asset.type is InvestmentType.CRYPTO:
                quote = self._price_service.fetch_crypto_quote(symbol)
            elif asset.type in (InvestmentType.STOCK, InvestmentType.REIT):
                quote = self._price_service.fetch_equity_quote(symbol)
            else:
                quote = None
            if quote is None:
                return None
            self._repository.update(
                "investment_assets",
                user_id,
                asset_id,
                {"current_price": quote.price},
                expected_version=asset.version,
            )
        return replace(asset, current_price=quote.price, version=asset.version + 1)

    def summary(self, user_id: str) -> tuple[PortfolioSummary, dict[str, Decimal]]:
        return portfolio_summary(self.list_assets(user_id)), earnings_summary(self.list_transactions(user_id))


class ReportService:
    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    def _data(self, user_id: str) -> tuple[list[Transaction], list[Category]]:
        return (
            _load(Transaction, self._repository.query("transactions", user_id)),
            _load(Category, self._repository.query("categories", user_id)),
        )

    def dre(self, user_id: str, month: date | str, basis: AccountingBasis = AccountingBasis.COMPETENCE) -> DreStatement:
        transactions, categories = self._data(user_id)
        return dre_statement(transactions, categories, month, basis)

    def monthly(self, user_id: str, month: date | str) -> MonthlyTotals:
        transactions, _ = self._data(user_id)
        return monthly_totals(transactions, month)
