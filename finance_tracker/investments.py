"""Investment position arithmetic.

Positions are updated per transaction: BUY grows the quantity and recomputes
the average cost, SELL shrinks the quantity at an unchanged average, and
earnings (DIVIDEND, JCP) never touch the position.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from .errors import ValidationError
from .models import (
    InvestmentAsset,
    InvestmentTransaction,
    InvestmentTransactionType,
    InvestmentType,
)

PRICE_PLACES = Decimal("0.00000001")
CENT = Decimal("0.01")
ZERO = Decimal("0")


def _decimal(field: str, value: object) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(field, f"not a number: {value!r}") from None


def build_investment_transaction(
    user_id: str,
    asset_id: str,
    type: InvestmentTransactionType | str,
    price: object,
    transaction_date: date,
    quantity: object = 0,
    fees: object = 0,
) -> InvestmentTransaction:
    """Validate the inputs and derive ``total_amount``.

    For earnings ``price`` is the amount received and the quantity is forced
    to zero.  BUY and SELL total ``quantity * price + fees``.
    """

    kind = InvestmentTransactionType(type)
    price_value = _decimal("price", price)
    quantity_value = _decimal("quantity", quantity)
    fees_value = _decimal("fees", fees)

    if price_value <= 0:
        raise ValidationError("price", "must be greater than zero")
    if fees_value < 0:
        raise ValidationError("fees", "must not be negative")

    if kind.is_earning:
        quantity_value = ZERO
        total = price_value
    else:
        if quantity_value <= 0:
            raise ValidationError("quantity", "must be greater than zero")
        total = quantity_value * price_value + fees_value

    return InvestmentTransaction(
        user_id=user_id,
        asset_id=asset_id,
        type=kind,
        quantity=quantity_value,
        price=price_value,
        fees=fees_value,
        total_amount=total.quantize(CENT, rounding=ROUND_HALF_UP),
        date=transaction_date,
    )


def apply_transaction(asset: InvestmentAsset, transaction: InvestmentTransaction) -> InvestmentAsset:
    """Return ``asset`` with ``transaction`` applied to its position."""

    if transaction.asset_id != asset.id:
        raise ValidationError("asset_id", "transaction belongs to another asset")

    if transaction.type is InvestmentTransactionType.BUY:
        quantity = asset.quantity + transaction.quantity
        cost = asset.quantity * asset.average_price + transaction.total_amount
        average = (cost / quantity).quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)
        return replace(asset, quantity=quantity, average_price=average)

    if transaction.type is InvestmentTransactionType.SELL:
        if transaction.quantity > asset.quantity:
            raise ValidationError(
                "quantity",
                f"cannot sell {transaction.quantity}; position is {asset.quantity}",
            )
        return replace(asset, quantity=asset.quantity - transaction.quantity)

    return asset


@dataclass(frozen=True, slots=True)
class PortfolioSummary:
    invested: Decimal
    market_value: Decimal
    profit: Decimal
    profitability: Decimal
    allocation: dict[InvestmentType, Decimal]


def portfolio_summary(assets: Iterable[InvestmentAsset]) -> PortfolioSummary:
    invested = ZERO
    market_value = ZERO
    allocation: dict[InvestmentType, Decimal] = defaultdict(Decimal)
    for asset in assets:
        invested += asset.quantity * asset.average_price
        value = asset.quantity * asset.current_price
        market_value += value
        allocation[asset.type] += value

    invested = invested.quantize(CENT, rounding=ROUND_HALF_UP)
    market_value = market_value.quantize(CENT, rounding=ROUND_HALF_UP)
    profit = market_value - invested
    profitability = (profit / invested * 100).quantize(CENT, rounding=ROUND_HALF_UP) if invested else ZERO
    return PortfolioSummary(
        invested=invested,
        market_value=market_value,
        profit=profit,
        profitability=profitability,
        allocation={kind: value.quantize(CENT, rounding=ROUND_HALF_UP) for kind, value in allocation.items()},
    )


def earnings_summary(transactions: Iterable[InvestmentTransaction]) -> dict[str, Decimal]:
    totals = {
        InvestmentTransactionType.DIVIDEND.value: ZERO,
        InvestmentTransactionType.JCP.value: ZERO,
    }
    for transaction in transactions:
        if transaction.type.is_earning:
            totals[transaction.type.value] += transaction.total_amount
    totals["total"] = sum(totals.values(), ZERO)
    return totals


__all__ = [
    "PortfolioSummary",
    "apply_transaction",
    "build_investment_transaction",
    "earnings_summary",
    "portfolio_summary",
]
