from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from finance_tracker.errors import StateConflictError, ValidationError
from finance_tracker.investments import (
    apply_transaction,
    build_investment_transaction,
    earnings_summary,
    portfolio_summary,
)
from finance_tracker.models import (
    InvestmentAsset,
    InvestmentTransactionType,
    InvestmentType,
    Quote,
)
from finance_tracker.services import InvestmentService

from .conftest import USER

DAY = date(2024, 5, 2)


def _asset(**overrides) -> InvestmentAsset:
    values = dict(user_id=USER, name="Acme", type=InvestmentType.STOCK, ticker="ACME")
    values.update(overrides)
    return InvestmentAsset(**values)


class FakePriceService:
    def __init__(self, price):
        self.price = price
        self.requested = []

    def fetch_equity_quote(self, symbol):
        self.requested.append(symbol)
        if self.price is None:
            return None
        return Quote(symbol=symbol, valuation_date=DAY, price=self.price, currency="USD", source="fake")

    def fetch_crypto_quote(self, symbol):
        return self.fetch_equity_quote(symbol)


@pytest.fixture
def investments(repository) -> InvestmentService:
    return InvestmentService(repository, FakePriceService(Decimal("12.50")))


def test_buy_recomputes_average_price():
    asset = _asset(quantity=Decimal("10"), average_price=Decimal("10"))
    buy = build_investment_transaction(USER, asset.id, "BUY", Decimal("20"), DAY, quantity=Decimal("10"))

    updated = apply_transaction(asset, buy)

    assert updated.quantity == Decimal("20")
    assert updated.average_price == Decimal("15")


def test_fees_enter_the_cost_basis():
    asset = _asset()
    buy = build_investment_transaction(
        USER, asset.id, "BUY", Decimal("10"), DAY, quantity=Decimal("4"), fees=Decimal("2")
    )
    assert buy.total_amount == Decimal("42.00")
    assert apply_transaction(asset, buy).average_price == Decimal("10.5")


def test_sell_keeps_average_price():
    asset = _asset(quantity=Decimal("10"), average_price=Decimal("15"))
    sell = build_investment_transaction(USER, asset.id, "SELL", Decimal("30"), DAY, quantity=Decimal("4"))

    updated = apply_transaction(asset, sell)

    assert updated.quantity == Decimal("6")
    assert updated.average_price == Decimal("15")


def test_oversell_is_rejected():
    asset = _asset(quantity=Decimal("1"), average_price=Decimal("15"))
    sell = build_investment_transaction(USER, asset.id, "SELL", Decimal("30"), DAY, quantity=Decimal("2"))
    with pytest.raises(ValidationError):
        apply_transaction(asset, sell)


def test_earnings_leave_position_alone():
    asset = _asset(quantity=Decimal("10"), average_price=Decimal("15"))
    dividend = build_investment_transaction(
        USER, asset.id, InvestmentTransactionType.DIVIDEND, Decimal("7.35"), DAY, quantity=Decimal("5")
    )

    assert dividend.quantity == Decimal("0")
    assert dividend.total_amount == Decimal("7.35")
    assert apply_transaction(asset, dividend) is asset


@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"price": Decimal("0")}, "price"),
        ({"price": Decimal("1"), "quantity": Decimal("0")}, "quantity"),
        ({"price": Decimal("1"), "quantity": Decimal("1"), "fees": Decimal("-1")}, "fees"),
    ],
)
def test_invalid_investment_transactions(kwargs, field):
    with pytest.raises(ValidationError) as excinfo:
        build_investment_transaction(USER, "asset", "BUY", transaction_date=DAY, **kwargs)
    assert excinfo.value.field == field


def test_portfolio_summary_and_allocation():
    assets = [
        _asset(quantity=Decimal("10"), average_price=Decimal("10"), current_price=Decimal("12")),
        _asset(
            name="Coin",
            type=InvestmentType.CRYPTO,
            quantity=Decimal("0.5"),
            average_price=Decimal("100"),
            current_price=Decimal("80"),
        ),
    ]
    summary = portfolio_summary(assets)

    assert summary.invested == Decimal("150.00")
    assert summary.market_value == Decimal("160.00")
    assert summary.profit == Decimal("10.00")
    assert summary.profitability == Decimal("6.67")
    assert summary.allocation == {InvestmentType.STOCK: Decimal("120.00"), InvestmentType.CRYPTO: Decimal("40.00")}


def test_earnings_summary_totals_by_kind():
    transactions = [
        build_investment_transaction(USER, "a", "DIVIDEND", Decimal("5"), DAY),
        build_investment_transaction(USER, "a", "JCP", Decimal("2.50"), DAY),
        build_investment_transaction(USER, "a", "BUY", Decimal("10"), DAY, quantity=Decimal("1")),
    ]
    totals = earnings_summary(transactions)
    assert totals == {"DIVIDEND": Decimal("5.00"), "JCP": Decimal("2.50"), "total": Decimal("7.50")}


def test_service_records_and_versions_asset(investments):
    asset = investments.create_asset(_asset())

    _, after_buy = investments.record_transaction(
        USER, asset.id, InvestmentTransactionType.BUY, Decimal("10"), DAY, quantity=Decimal("10")
    )
    _, after_sell = investments.record_transaction(
        USER, asset.id, InvestmentTransactionType.SELL, Decimal("12"), DAY, quantity=Decimal("4")
    )

    stored = investments.get_asset(USER, asset.id)
    assert stored.quantity == Decimal("6")
    assert stored.average_price == Decimal("10")
    assert stored.version == 2
    assert after_sell.version == stored.version
    assert after_buy.version == 1
    assert len(investments.list_transactions(USER, asset.id)) == 2


def test_service_rejects_oversell_without_writing(investments):
    asset = investments.create_asset(_asset())
    with pytest.raises(ValidationError):
        investments.record_transaction(
            USER, asset.id, InvestmentTransactionType.SELL, Decimal("12"), DAY, quantity=Decimal("1")
        )
    assert investments.list_transactions(USER) == []


def test_stale_asset_version_is_a_conflict(investments, repository):
    asset = investments.create_asset(_asset())
    investments.record_transaction(
        USER, asset.id, InvestmentTransactionType.BUY, Decimal("10"), DAY, quantity=Decimal("1")
    )
    with pytest.raises(StateConflictError):
        repository.update(
            "investment_assets",
            USER,
            asset.id,
            {"quantity": Decimal("99")},
            expected_version=asset.version,
        )


def test_refresh_price_marks_to_market(investments):
    asset = investments.create_asset(_asset())
    refreshed = investments.refresh_price(USER, asset.id)
    assert refreshed.current_price == Decimal("12.50")
    assert investments.get_asset(USER, asset.id).current_price == Decimal("12.50")


def test_asset_locks_are_released(investments):
    asset = investments.create_asset(_asset())
    investments.record_transaction(
        USER, asset.id, InvestmentTransactionType.BUY, Decimal("10"), DAY, quantity=Decimal("1")
    )
    investments.refresh_price(USER, asset.id)
    with pytest.raises(ValidationError):
        investments.record_transaction(
            USER, asset.id, InvestmentTransactionType.SELL, Decimal("10"), DAY, quantity=Decimal("5")
        )
    assert investments._locks == {}


def test_refresh_price_without_quote(repository):
    service = InvestmentService(repository, FakePriceService(None))
    asset = service.create_asset(_asset())
    assert service.refresh_price(USER, asset.id) is None
    assert InvestmentService(repository).refresh_price(USER, asset.id) is None


def test_fixed_income_is_not_quoted(investments):
    asset = investments.create_asset(replace(_asset(), type=InvestmentType.FIXED_INCOME))
    assert investments.refresh_price(USER, asset.id) is None
