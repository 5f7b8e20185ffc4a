"""Subscription status rules and billing date arithmetic.

All functions here are pure: they take the clock as an argument and never
touch storage, so callers decide whether a derived status is written back.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from .models import AccountType, BillingInterval, PaymentStatus

DEFAULT_GRACE_DAYS = 3

_INTERVAL_MONTHS = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.SEMESTER: 6,
    BillingInterval.ANNUAL: 12,
}

_DOCUMENT_LENGTHS = {
    AccountType.PERSONAL: 11,
    AccountType.BUSINESS: 14,
}

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True, slots=True)
class StatusResult:
    status: PaymentStatus
    days_overdue: int


def _as_datetime(value: date | datetime, tz_source: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    tzinfo = tz_source.tzinfo if isinstance(tz_source, datetime) else None
    return datetime(value.year, value.month, value.day, tzinfo=tzinfo)


def days_overdue(now: date | datetime, expiration_date: date | datetime) -> int:
    """Whole days past expiration, rounded up; negative while still valid."""

    elapsed = _as_datetime(now, expiration_date) - _as_datetime(expiration_date, now)
    return math.ceil(elapsed / timedelta(days=1))


def determine_status(
    now: date | datetime,
    expiration_date: date | datetime,
    current_status: Optional[PaymentStatus] = None,
    grace_days: int = DEFAULT_GRACE_DAYS,
) -> StatusResult:
    """Map the time since expiration to a payment status.

    * not yet expired (``days_overdue <= 0``): PAID, reported as 0 days
    * up to ``grace_days`` days late: OVERDUE
    * later than that: SUSPENDED

    ``current_status`` is accepted for call-site symmetry with the stored
    field; the result depends on the dates alone.
    """

    overdue = days_overdue(now, expiration_date)
    if overdue <= 0:
        return StatusResult(PaymentStatus.PAID, 0)
    if overdue > grace_days:
        return StatusResult(PaymentStatus.SUSPENDED, overdue)
    return StatusResult(PaymentStatus.OVERDUE, overdue)


def validate_document(document: Optional[str], account_type: AccountType | str) -> bool:
    """Check the digit count of a CPF (PERSONAL) or CNPJ (BUSINESS).

    Punctuation is ignored.  Check digits are not verified.
    """

    if not document:
        return False
    try:
        expected = _DOCUMENT_LENGTHS[AccountType(account_type)]
    except ValueError:
        return False
    return len(_NON_DIGITS.sub("", document)) == expected


def calculate_next_due(expiration_date: date, interval: BillingInterval | str) -> date:
    """Advance ``expiration_date`` by one billing interval, clamping the day."""

    return expiration_date + relativedelta(months=_INTERVAL_MONTHS[BillingInterval(interval)])


def reference_month(now: date | datetime) -> str:
    """Human label of the billed month, e.g. ``"01/2024"``."""

    return f"{now.month:02d}/{now.year}"


__all__ = [
    "DEFAULT_GRACE_DAYS",
    "StatusResult",
    "calculate_next_due",
    "days_overdue",
    "determine_status",
    "reference_month",
    "validate_document",
]
