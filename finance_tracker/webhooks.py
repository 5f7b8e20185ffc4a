"""Payment gateway webhook processing.

:func:`handle_event` is the whole state machine: it takes the stored
subscription state and returns the next state plus, on a successful payment,
the invoice to persist.  Payment always wins: a SUSPENDED subscriber who pays
is restored to PAID with a freshly advanced expiration.  Failed payments only
count attempts; suspension comes from the date rules in
:mod:`finance_tracker.subscription`.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .errors import ValidationError
from .models import (
    Invoice,
    InvoiceStatus,
    PaymentStatus,
    SubscriptionState,
    WebhookEvent,
    WebhookEventType,
)
from .subscription import calculate_next_due, reference_month

INVOICE_PDF_PLACEHOLDER = "#"


@dataclass(frozen=True, slots=True)
class WebhookResult:
    state: SubscriptionState
    invoice: Optional[Invoice] = None


def handle_event(event: WebhookEvent, state: SubscriptionState, now: datetime) -> WebhookResult:
    if event.user_id != state.user_id:
        raise ValidationError("user_id", "event does not belong to this subscription")

    if event.event is WebhookEventType.PAYMENT_FAILED:
        return WebhookResult(replace(state, billing_attempts=state.billing_attempts + 1))

    # Gateways retry deliveries; a payment already applied is not applied twice.
    if state.last_invoice_id is not None and state.last_invoice_id == event.transaction_id:
        return WebhookResult(state)

    due_date = state.expiration_date
    new_state = replace(
        state,
        payment_status=PaymentStatus.PAID,
        expiration_date=calculate_next_due(due_date, state.billing_interval),
        billing_attempts=0,
        last_invoice_id=event.transaction_id,
    )
    invoice = Invoice(
        user_id=state.user_id,
        amount=state.subscription_price,
        status=InvoiceStatus.PAID,
        due_date=due_date,
        reference_month=reference_month(now),
        paid_at=now,
        pdf_url=INVOICE_PDF_PLACEHOLDER,
    )
    return WebhookResult(new_state, invoice)


__all__ = ["INVOICE_PDF_PLACEHOLDER", "WebhookResult", "handle_event"]
