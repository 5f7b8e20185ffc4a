"""Ledger expansion: turn one transaction draft into persisted rows.

A draft is either stored as one row, split into N dated installments whose
amounts add up exactly to the requested total, or repeated as a fixed monthly
obligation.  Everything here is pure; persistence lives in
:class:`finance_tracker.services.LedgerService`.
"""
from __future__ import annotations

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from dateutil.relativedelta import relativedelta

from .errors import ValidationError
from .models import (
    FinancialSummary,
    RecurrenceType,
    Transaction,
    TransactionDraft,
    TransactionStatus,
    TransactionType,
    TransactionUpdate,
    new_id,
)

CENT = Decimal("0.01")
SETTLEMENT_TOLERANCE = Decimal("0.01")


def normalize_amount(value: object) -> Decimal:
    """Quantize a currency value to two places.

    Floats are routed through :func:`str` so binary noise such as
    ``0.1 + 0.2`` does not leak into the split.
    """

    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("amount", f"not a valid amount: {value!r}") from None


def split_installments(amount: Decimal, count: int) -> list[Decimal]:
    """Split ``amount`` into ``count`` values that sum to it exactly.

    Every value is ``round(amount / count, 2)`` except the first, which also
    absorbs the rounding remainder (positive or negative).
    """

    if count < 1:
        raise ValueError("count must be at least 1")
    total = normalize_amount(amount)
    unit = (total / count).quantize(CENT, rounding=ROUND_HALF_UP)
    remainder = total - unit * count
    return [unit + remainder] + [unit] * (count - 1)


def validate_draft(draft: TransactionDraft, max_installments: int = 999) -> None:
    """Reject drafts that must never reach storage."""

    if not draft.description or not draft.description.strip():
        raise ValidationError("description", "must not be blank")
    if normalize_amount(draft.amount) <= 0:
        raise ValidationError("amount", "must be greater than zero")
    if not draft.account_id:
        raise ValidationError("account_id", "is required")

    if draft.type is TransactionType.TRANSFER:
        if not draft.to_account_id:
            raise ValidationError("to_account_id", "is required for transfers")
        if draft.to_account_id == draft.account_id:
            raise ValidationError("to_account_id", "cannot transfer to the same account")
    else:
        if not draft.category_id:
            raise ValidationError("category_id", "is required unless type is TRANSFER")
        if draft.to_account_id:
            raise ValidationError("to_account_id", "only transfers have a destination account")

    if draft.is_recurring and draft.recurring_type is None:
        raise ValidationError("recurring_type", "is required for recurring transactions")
    if draft.recurrence_count is not None:
        if draft.recurrence_count < 1:
            raise ValidationError("recurrence_count", "must be at least 1")
        if draft.recurrence_count > max_installments:
            raise ValidationError("recurrence_count", f"must not exceed {max_installments}")


def expand(draft: TransactionDraft, fixed_months: int = 12) -> list[Transaction]:
    """Produce the rows for ``draft``; the first element is the anchor."""

    amount = normalize_amount(draft.amount)
    anchor_id = draft.id or new_id()

    # Drafts already tagged with a group are edits of an existing series.
    if not draft.is_recurring or draft.group_id is not None:
        return [_row(draft, anchor_id, amount, 0)]

    if draft.recurring_type is RecurrenceType.INSTALLMENT:
        count = draft.recurrence_count or 1
        if count <= 1:
            return [_row(draft, anchor_id, amount, 0)]
        group_id = new_id()
        return [
            _row(
                draft,
                anchor_id if index == 0 else new_id(),
                value,
                index,
                group_id=group_id,
                installment=(index + 1, count),
            )
            for index, value in enumerate(split_installments(amount, count))
        ]

    group_id = new_id()
    return [
        _row(draft, anchor_id if index == 0 else new_id(), amount, index, group_id=group_id)
        for index in range(fixed_months)
    ]


def _row(
    draft: TransactionDraft,
    record_id: str,
    amount: Decimal,
    offset: int,
    group_id: Optional[str] = None,
    installment: Optional[tuple[int, int]] = None,
) -> Transaction:
    # Only the anchor keeps the caller's status; later months are not paid yet.
    status = draft.status if offset == 0 else TransactionStatus.PENDING
    return Transaction(
        id=record_id,
        user_id=draft.user_id,
        description=draft.description.strip(),
        amount=amount,
        date=draft.date + relativedelta(months=offset),
        type=draft.type,
        account_id=draft.account_id,
        status=status,
        category_id=draft.category_id if draft.type is not TransactionType.TRANSFER else None,
        to_account_id=draft.to_account_id,
        payment_date=draft.payment_date if status is TransactionStatus.PAID else None,
        is_recurring=draft.is_recurring,
        recurring_type=draft.recurring_type if draft.is_recurring else None,
        installment_current=installment[0] if installment else None,
        installment_total=installment[1] if installment else None,
        group_id=group_id if group_id is not None else draft.group_id,
        parent_id=draft.parent_id,
        observation=draft.observation,
    )


def apply_update(existing: Transaction, update: TransactionUpdate) -> Transaction:
    """Return ``existing`` with the editable fields of ``update`` applied.

    Recurrence bookkeeping (group, installment position, parent) is kept as is.
    """

    draft = TransactionDraft(
        user_id=existing.user_id,
        description=update.description,
        amount=update.amount,
        date=update.date,
        type=update.type,
        account_id=update.account_id,
        status=update.status,
        category_id=update.category_id,
        to_account_id=update.to_account_id,
        payment_date=update.payment_date,
    )
    validate_draft(draft)
    return Transaction(
        id=existing.id,
        user_id=existing.user_id,
        description=update.description.strip(),
        amount=normalize_amount(update.amount),
        date=update.date,
        type=update.type,
        account_id=update.account_id,
        status=update.status,
        category_id=update.category_id if update.type is not TransactionType.TRANSFER else None,
        to_account_id=update.to_account_id,
        payment_date=update.payment_date if update.status is TransactionStatus.PAID else None,
        is_recurring=existing.is_recurring,
        recurring_type=existing.recurring_type,
        installment_current=existing.installment_current,
        installment_total=existing.installment_total,
        group_id=existing.group_id,
        parent_id=existing.parent_id,
        observation=update.observation,
    )


def balance_deltas(transaction: Transaction, sign: int = 1) -> dict[str, Decimal]:
    """Account balance movements caused by ``transaction``.

    Only PAID rows move money.  ``sign=-1`` yields the reversal.
    """

    if transaction.status is not TransactionStatus.PAID:
        return {}
    amount = transaction.amount * sign
    deltas: dict[str, Decimal] = defaultdict(Decimal)
    if transaction.type is TransactionType.INCOME:
        deltas[transaction.account_id] += amount
    elif transaction.type is TransactionType.EXPENSE:
        deltas[transaction.account_id] -= amount
    else:
        deltas[transaction.account_id] -= amount
        if transaction.to_account_id:
            deltas[transaction.to_account_id] += amount
    return dict(deltas)


def merge_deltas(movements: Iterable[dict[str, Decimal]]) -> dict[str, Decimal]:
    merged: dict[str, Decimal] = defaultdict(Decimal)
    for movement in movements:
        for account_id, delta in movement.items():
            merged[account_id] += delta
    return {account_id: delta for account_id, delta in merged.items() if delta != 0}


def build_settlement(
    parent: Transaction,
    amount: object,
    payment_date,
    description: Optional[str] = None,
) -> Transaction:
    """Create the PAID follow-up row that settles (part of) ``parent``."""

    value = normalize_amount(amount)
    if value <= 0:
        raise ValidationError("amount", "must be greater than zero")
    if parent.parent_id is not None:
        raise ValidationError("parent_id", "a settlement cannot itself be settled")
    if parent.status is TransactionStatus.PAID:
        raise ValidationError("status", "transaction is already paid")
    return Transaction(
        user_id=parent.user_id,
        description=(description or "").strip() or f"Settlement: {parent.description}",
        amount=value,
        date=payment_date,
        type=parent.type,
        account_id=parent.account_id,
        status=TransactionStatus.PAID,
        category_id=parent.category_id,
        to_account_id=parent.to_account_id,
        payment_date=payment_date,
        is_recurring=False,
        parent_id=parent.id,
        observation=parent.observation,
    )


def is_fully_settled(parent: Transaction, children: Iterable[Transaction]) -> bool:
    paid = sum(
        (child.amount for child in children if child.status is TransactionStatus.PAID),
        Decimal("0"),
    )
    return paid >= parent.amount - SETTLEMENT_TOLERANCE


def summarize(transactions: Iterable[Transaction], total_balance: Decimal) -> FinancialSummary:
    """Realized totals plus what is still open on PENDING root rows."""

    rows = list(transactions)
    settled_parents = {row.parent_id for row in rows if row.parent_id}
    paid_children: dict[str, Decimal] = defaultdict(Decimal)
    for row in rows:
        if row.parent_id and row.status is TransactionStatus.PAID:
            paid_children[row.parent_id] += row.amount

    realized = defaultdict(Decimal)
    pending = defaultdict(Decimal)
    for row in rows:
        if row.type is TransactionType.TRANSFER:
            continue
        if row.status is TransactionStatus.PAID:
            # A settled parent is counted through its settlement rows.
            if row.id in settled_parents:
                continue
            realized[row.type] += row.amount
        elif row.parent_id is None:
            pending[row.type] += max(Decimal("0"), row.amount - paid_children[row.id])

    return FinancialSummary(
        total_balance=total_balance,
        total_income=realized[TransactionType.INCOME],
        total_expense=realized[TransactionType.EXPENSE],
        pending_income=pending[TransactionType.INCOME],
        pending_expense=pending[TransactionType.EXPENSE],
    )


__all__ = [
    "apply_update",
    "balance_deltas",
    "build_settlement",
    "expand",
    "is_fully_settled",
    "merge_deltas",
    "normalize_amount",
    "split_installments",
    "summarize",
    "validate_draft",
]
