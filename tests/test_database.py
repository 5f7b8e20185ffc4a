from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from finance_tracker.database import SQLiteRepository
from finance_tracker.errors import PersistenceError, RecordNotFoundError, StateConflictError

from .conftest import USER


def _account(record_id, name="Checking", balance="0.00"):
    return {"id": record_id, "user_id": USER, "name": name, "balance": Decimal(balance), "color": "blue", "type": "CHECKING"}


def test_schema_initialisation_is_idempotent(repository):
    repository.initialise_schema()
    assert repository.query("accounts", USER) == []


def test_values_round_trip_exactly(repository):
    paid_at = datetime(2024, 1, 20, 9, 30, tzinfo=timezone.utc)
    repository.create(
        "invoices",
        {
            "id": "inv-1",
            "user_id": USER,
            "amount": Decimal("29.90"),
            "status": "PAID",
            "due_date": date(2024, 1, 15),
            "reference_month": "01/2024",
            "paid_at": paid_at,
            "pdf_url": None,
        },
    )
    row = repository.get("invoices", USER, "inv-1")
    assert row["amount"] == Decimal("29.90")
    assert str(row["amount"]) == "29.90"
    assert row["due_date"] == date(2024, 1, 15)
    assert row["paid_at"] == paid_at
    assert row["pdf_url"] is None


def test_rows_are_scoped_by_user(repository):
    repository.create("accounts", _account("acc-1"))
    with pytest.raises(RecordNotFoundError):
        repository.get("accounts", "intruder", "acc-1")
    assert repository.query("accounts", "intruder") == []


def test_query_filters_and_ordering(repository):
    repository.create("accounts", _account("a", name="Beta"))
    repository.create("accounts", _account("b", name="Alpha"))
    repository.create("accounts", {**_account("c", name="Gamma"), "color": None})

    assert [row["name"] for row in repository.query("accounts", USER, order_by="name")] == ["Alpha", "Beta", "Gamma"]
    assert [row["name"] for row in repository.query("accounts", USER, order_by="-name")] == ["Gamma", "Beta", "Alpha"]
    assert [row["id"] for row in repository.query("accounts", USER, {"color": None})] == ["c"]
    with pytest.raises(ValueError):
        repository.query("accounts", USER, {"nope": 1})


def test_create_batch_is_all_or_nothing(repository):
    repository.create("accounts", _account("dup"))
    with pytest.raises(PersistenceError):
        repository.create_batch("accounts", [_account("new"), _account("dup")])
    assert [row["id"] for row in repository.query("accounts", USER)] == ["dup"]


def test_atomic_rolls_back_on_error(repository):
    with pytest.raises(RuntimeError):
        with repository.atomic():
            repository.create("accounts", _account("acc-1"))
            raise RuntimeError("boom")
    assert repository.query("accounts", USER) == []


def test_nested_atomic_rolls_back_inner_block_only(repository):
    with repository.atomic():
        repository.create("accounts", _account("outer"))
        with pytest.raises(RuntimeError):
            with repository.atomic():
                repository.create("accounts", _account("inner"))
                raise RuntimeError("boom")
    assert [row["id"] for row in repository.query("accounts", USER)] == ["outer"]


def test_versioned_update(repository):
    repository.create(
        "investment_assets",
        {"id": "asset", "user_id": USER, "name": "Acme", "type": "STOCK", "quantity": Decimal("1"), "version": 0},
    )
    repository.update("investment_assets", USER, "asset", {"quantity": Decimal("2")}, expected_version=0)
    assert repository.get("investment_assets", USER, "asset")["version"] == 1

    with pytest.raises(StateConflictError):
        repository.update("investment_assets", USER, "asset", {"quantity": Decimal("3")}, expected_version=0)
    with pytest.raises(RecordNotFoundError):
        repository.update("investment_assets", USER, "missing", {"quantity": Decimal("3")}, expected_version=0)
    assert repository.get("investment_assets", USER, "asset")["quantity"] == Decimal("2")


def test_update_rejects_unknown_columns(repository):
    repository.create("accounts", _account("acc-1"))
    with pytest.raises(ValueError):
        repository.update("accounts", USER, "acc-1", {"nope": 1})


def test_increment(repository):
    repository.create("accounts", _account("acc-1", balance="10.00"))
    repository.increment("accounts", USER, "acc-1", "balance", Decimal("-2.50"))
    assert repository.get("accounts", USER, "acc-1")["balance"] == Decimal("7.50")


def test_delete_missing_record(repository):
    with pytest.raises(RecordNotFoundError):
        repository.delete("accounts", USER, "missing")


def test_subscriptions_are_keyed_by_user(repository):
    repository.create("subscriptions", {"user_id": USER, "expiration_date": date(2024, 1, 15), "version": 0})
    assert repository.get("subscriptions", USER, USER)["expiration_date"] == date(2024, 1, 15)


def test_closed_connection_raises_persistence_error(tmp_path):
    repo = SQLiteRepository(tmp_path / "closed.db")
    repo.initialise_schema()
    repo.close()
    with pytest.raises(PersistenceError):
        repo.query("accounts", USER)
