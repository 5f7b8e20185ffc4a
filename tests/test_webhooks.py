from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from finance_tracker.errors import StateConflictError, ValidationError
from finance_tracker.models import (
    InvoiceStatus,
    PaymentStatus,
    SubscriptionState,
    WebhookEvent,
    WebhookEventType,
)
from finance_tracker.services import SubscriptionService
from finance_tracker.webhooks import handle_event

from .conftest import USER

NOW = datetime(2024, 1, 20, 9, 30, tzinfo=timezone.utc)


def _state(**overrides) -> SubscriptionState:
    values = dict(
        user_id=USER,
        expiration_date=date(2024, 1, 15),
        payment_status=PaymentStatus.OVERDUE,
        billing_attempts=2,
        subscription_price=Decimal("29.90"),
    )
    values.update(overrides)
    return SubscriptionState(**values)


def _event(kind=WebhookEventType.PAYMENT_RECEIVED, transaction_id="pay-1", user_id=USER) -> WebhookEvent:
    return WebhookEvent(event=kind, transaction_id=transaction_id, user_id=user_id, amount=Decimal("29.90"))


@pytest.fixture
def subscriptions(config, repository) -> SubscriptionService:
    return SubscriptionService(config, repository)


def test_payment_received_advances_expiration_and_issues_invoice():
    result = handle_event(_event(), _state(), NOW)

    assert result.state.payment_status is PaymentStatus.PAID
    assert result.state.expiration_date == date(2024, 2, 15)
    assert result.state.billing_attempts == 0
    assert result.state.last_invoice_id == "pay-1"

    invoice = result.invoice
    assert invoice.status is InvoiceStatus.PAID
    assert invoice.due_date == date(2024, 1, 15)
    assert invoice.amount == Decimal("29.90")
    assert invoice.paid_at == NOW
    assert invoice.reference_month == "01/2024"


def test_suspended_subscriber_is_restored_by_payment():
    result = handle_event(_event(), _state(payment_status=PaymentStatus.SUSPENDED), NOW)
    assert result.state.payment_status is PaymentStatus.PAID


def test_payment_failed_only_counts_attempts():
    state = _state()
    result = handle_event(_event(WebhookEventType.PAYMENT_FAILED), state, NOW)

    assert result.invoice is None
    assert result.state.billing_attempts == 3
    assert result.state.payment_status is PaymentStatus.OVERDUE
    assert result.state.expiration_date == state.expiration_date


def test_duplicate_delivery_is_ignored():
    state = _state(last_invoice_id="pay-1")
    result = handle_event(_event(), state, NOW)
    assert result.state is state
    assert result.invoice is None


def test_event_for_other_user_is_rejected():
    with pytest.raises(ValidationError):
        handle_event(_event(user_id="someone-else"), _state(), NOW)


def test_service_persists_state_and_invoice(subscriptions):
    subscriptions.register(_state())

    result = subscriptions.process_webhook(_event(), NOW)

    stored = subscriptions.get(USER)
    assert stored.expiration_date == date(2024, 2, 15)
    assert stored.payment_status is PaymentStatus.PAID
    assert stored.version == 1
    assert result.state.version == 1
    assert [invoice.id for invoice in subscriptions.invoices(USER)] == [result.invoice.id]


def test_service_redelivery_writes_nothing(subscriptions):
    subscriptions.register(_state())
    subscriptions.process_webhook(_event(), NOW)
    subscriptions.process_webhook(_event(), NOW)

    assert subscriptions.get(USER).expiration_date == date(2024, 2, 15)
    assert len(subscriptions.invoices(USER)) == 1


def test_stale_version_is_a_conflict(subscriptions, repository):
    subscriptions.register(_state())
    stale = subscriptions.get(USER)
    subscriptions.process_webhook(_event(), NOW)

    with pytest.raises(StateConflictError):
        repository.update(
            "subscriptions",
            USER,
            USER,
            {"expiration_date": date(2024, 3, 15)},
            expected_version=stale.version,
        )
    assert subscriptions.get(USER).expiration_date == date(2024, 2, 15)


def test_sync_status_writes_derived_status(subscriptions):
    subscriptions.register(_state(payment_status=PaymentStatus.PAID))

    result = subscriptions.sync_status(USER, datetime(2024, 1, 25, tzinfo=timezone.utc))

    assert result.status is PaymentStatus.SUSPENDED
    assert subscriptions.get(USER).payment_status is PaymentStatus.SUSPENDED


def test_register_rejects_bad_document(subscriptions):
    with pytest.raises(ValidationError):
        subscriptions.register(_state(document="123"))


def test_update_profile(subscriptions):
    subscriptions.register(_state())
    updated = subscriptions.update_profile(USER, "BUSINESS", "12.345.678/0001-95")
    assert updated.version == 1
    assert subscriptions.get(USER).document == "12.345.678/0001-95"


def test_invoices_are_newest_first(subscriptions):
    subscriptions.register(_state())
    subscriptions.process_webhook(_event(transaction_id="pay-1"), NOW)
    subscriptions.process_webhook(_event(transaction_id="pay-2"), NOW)

    due_dates = [invoice.due_date for invoice in subscriptions.invoices(USER)]
    assert due_dates == [date(2024, 2, 15), date(2024, 1, 15)]


def test_failed_payment_bumps_attempts_in_storage(subscriptions):
    subscriptions.register(replace(_state(), billing_attempts=0))
    subscriptions.process_webhook(_event(WebhookEventType.PAYMENT_FAILED), NOW)
    assert subscriptions.get(USER).billing_attempts == 1
