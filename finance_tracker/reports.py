"""Monthly reports built with pandas: totals and the DRE income statement."""
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Sequence

import pandas as pd

from .models import Category, DreCategory, Transaction, TransactionStatus, TransactionType

ZERO = Decimal("0")


class AccountingBasis(str, Enum):
    COMPETENCE = "COMPETENCE"
    CASH = "CASH"


def to_period(month: date | str | pd.Period) -> pd.Period:
    """Accept ``"2024-01"``, any date in the month, or a period."""

    if isinstance(month, pd.Period):
        return month.asfreq("M")
    if isinstance(month, date):
        month = pd.Timestamp(month)
    return pd.Period(month, freq="M")


def _decimal_sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def _frame(transactions: Iterable[Transaction], categories: Sequence[Category] = ()) -> pd.DataFrame:
    dre_lookup = {category.id: category.dre_category for category in categories}
    rows = [
        {
            "id": tx.id,
            "parent_id": tx.parent_id,
            "type": tx.type.value,
            "status": tx.status.value,
            "amount": tx.amount,
            "date": tx.date,
            "payment_date": tx.payment_date,
            "is_recurring": bool(tx.is_recurring),
            "dre": dre_lookup[tx.category_id].value
            if tx.category_id in dre_lookup and dre_lookup[tx.category_id] is not None
            else None,
        }
        for tx in transactions
    ]
    frame = pd.DataFrame(
        rows,
        columns=["id", "parent_id", "type", "status", "amount", "date", "payment_date", "is_recurring", "dre"],
    )
    frame["date"] = pd.to_datetime(frame["date"])
    frame["payment_date"] = pd.to_datetime(frame["payment_date"])
    return frame


def active_rows(
    frame: pd.DataFrame,
    month: date | str | pd.Period,
    basis: AccountingBasis | str = AccountingBasis.COMPETENCE,
) -> pd.DataFrame:
    """Rows that count towards ``month`` under the given accounting basis.

    COMPETENCE takes root rows by their due date.  CASH takes PAID rows by
    payment date, using settlement rows instead of the parents they settle.
    """

    period = to_period(month)
    if AccountingBasis(basis) is AccountingBasis.CASH:
        settled = set(frame["parent_id"].dropna())
        mask = (
            (frame["status"] == TransactionStatus.PAID.value)
            & frame["payment_date"].notna()
            & (frame["payment_date"].dt.to_period("M") == period)
            & (frame["parent_id"].notna() | ~frame["id"].isin(settled))
        )
    else:
        mask = (frame["date"].dt.to_period("M") == period) & frame["parent_id"].isna()
    return frame[mask & (frame["type"] != TransactionType.TRANSFER.value)]


@dataclass(frozen=True, slots=True)
class MonthlyTotals:
    income: Decimal
    expense: Decimal
    balance: Decimal
    fixed_expenses: Decimal


def monthly_totals(transactions: Iterable[Transaction], month: date | str | pd.Period) -> MonthlyTotals:
    frame = active_rows(_frame(transactions), month)
    income = _decimal_sum(frame.loc[frame["type"] == TransactionType.INCOME.value, "amount"])
    expenses = frame[frame["type"] == TransactionType.EXPENSE.value]
    expense = _decimal_sum(expenses["amount"])
    fixed = _decimal_sum(expenses.loc[expenses["is_recurring"].astype(bool), "amount"])
    return MonthlyTotals(income=income, expense=expense, balance=income - expense, fixed_expenses=fixed)


@dataclass(frozen=True, slots=True)
class DreStatement:
    gross_revenue: Decimal
    taxes: Decimal
    net_revenue: Decimal
    costs: Decimal
    contribution_margin: Decimal
    expense_personnel: Decimal
    expense_commercial: Decimal
    expense_admin: Decimal
    total_operating_expenses: Decimal
    ebitda: Decimal
    financial_income: Decimal
    financial_expense: Decimal
    financial_result: Decimal
    net_profit: Decimal
    unclassified_income: Decimal
    unclassified_expense: Decimal

    def vertical_analysis(self, value: Decimal) -> Decimal:
        """``value`` as a percentage of gross revenue."""

        if not self.gross_revenue:
            return ZERO
        return (value / self.gross_revenue * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def vertical_breakdown(self) -> dict[str, Decimal]:
        """Every line of the statement as a percentage of gross revenue."""

        return {line.name: self.vertical_analysis(getattr(self, line.name)) for line in fields(self)}


def dre_statement(
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
    month: date | str | pd.Period,
    basis: AccountingBasis | str = AccountingBasis.COMPETENCE,
) -> DreStatement:
    """Income statement for one month.

    Rows without a DRE mapping fall into gross revenue (income) or
    administrative expenses (expense).
    """

    frame = active_rows(_frame(transactions, categories), month, basis)
    classified = frame[frame["dre"].notna()]
    totals = classified.groupby("dre")["amount"].agg(_decimal_sum).to_dict()

    def line(dre: DreCategory) -> Decimal:
        return totals.get(dre.value, ZERO)

    unclassified = frame[frame["dre"].isna()]
    unclassified_income = _decimal_sum(unclassified.loc[unclassified["type"] == TransactionType.INCOME.value, "amount"])
    unclassified_expense = _decimal_sum(unclassified.loc[unclassified["type"] == TransactionType.EXPENSE.value, "amount"])

    gross_revenue = line(DreCategory.GROSS_REVENUE) + unclassified_income
    taxes = line(DreCategory.TAXES)
    net_revenue = gross_revenue - taxes
    costs = line(DreCategory.COSTS)
    contribution_margin = net_revenue - costs
    personnel = line(DreCategory.EXPENSE_PERSONNEL)
    commercial = line(DreCategory.EXPENSE_COMMERCIAL)
    admin = line(DreCategory.EXPENSE_ADMIN) + unclassified_expense
    operating = personnel + commercial + admin
    ebitda = contribution_margin - operating
    financial_income = line(DreCategory.FINANCIAL_INCOME)
    financial_expense = line(DreCategory.FINANCIAL_EXPENSE)
    financial_result = financial_income - financial_expense

    return DreStatement(
        gross_revenue=gross_revenue,
        taxes=taxes,
        net_revenue=net_revenue,
        costs=costs,
        contribution_margin=contribution_margin,
        expense_personnel=personnel,
        expense_commercial=commercial,
        expense_admin=admin,
        total_operating_expenses=operating,
        ebitda=ebitda,
        financial_income=financial_income,
        financial_expense=financial_expense,
        financial_result=financial_result,
        net_profit=ebitda + financial_result,
        unclassified_income=unclassified_income,
        unclassified_expense=unclassified_expense,
    )


__all__ = [
    "AccountingBasis",
    "DreStatement",
    "MonthlyTotals",
    "active_rows",
    "dre_statement",
    "monthly_totals",
    "to_period",
]
