import pytest
from fastapi.testclient import TestClient

from finance_tracker.api import app

from .conftest import USER

HEADERS = {"X-User-Id": USER}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("FINANCE_TRACKER_DB_FILE", str(tmp_path / "api.db"))
    monkeypatch.delenv("ALPHAVANTAGE_API_KEY", raising=False)
    monkeypatch.delenv("COINRANKING_API_KEY", raising=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def account_id(client):
    response = client.post("/accounts", json={"name": "Checking", "balance": "1000.00"}, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def category_id(client):
    response = client.post("/categories", json={"name": "Rent", "type": "EXPENSE"}, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_user_header_is_required(client):
    assert client.get("/accounts").status_code == 422


def test_accounts_are_per_user(client, account_id):
    mine = client.get("/accounts", headers=HEADERS).json()
    theirs = client.get("/accounts", headers={"X-User-Id": "other"}).json()
    assert mine["count"] == 1
    assert mine["accounts"][0]["id"] == account_id
    assert theirs["count"] == 0


def test_installment_creation_and_group_delete(client, account_id, category_id):
    response = client.post(
        "/transactions",
        json={
            "description": "Laptop",
            "amount": "100.00",
            "date": "2024-01-31",
            "type": "EXPENSE",
            "account_id": account_id,
            "category_id": category_id,
            "is_recurring": True,
            "recurring_type": "INSTALLMENT",
            "recurrence_count": 3,
        },
        headers=HEADERS,
    )
    assert response.status_code == 201
    anchor = response.json()
    assert anchor["installment_current"] == 1
    assert anchor["amount"] == "33.34"

    group = client.get("/transactions", params={"group_id": anchor["group_id"]}, headers=HEADERS).json()
    assert [row["date"] for row in group["transactions"]] == ["2024-01-31", "2024-02-29", "2024-03-31"]

    deleted = client.delete(f"/transaction-groups/{anchor['group_id']}", headers=HEADERS)
    assert deleted.json()["deleted"] == 3
    assert client.get("/transactions", headers=HEADERS).json()["count"] == 0


def test_validation_error_payload(client, account_id):
    response = client.post(
        "/transactions",
        json={
            "description": "No category",
            "amount": "10.00",
            "date": "2024-01-31",
            "type": "EXPENSE",
            "account_id": account_id,
        },
        headers=HEADERS,
    )
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert response.json()["field"] == "category_id"


def test_missing_record_is_404(client):
    response = client.delete("/transactions/missing", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["code"] == "RECORD_NOT_FOUND"


def test_settlement_updates_summary(client, account_id, category_id):
    parent = client.post(
        "/transactions",
        json={
            "description": "Rent",
            "amount": "100.00",
            "date": "2024-02-01",
            "type": "EXPENSE",
            "account_id": account_id,
            "category_id": category_id,
        },
        headers=HEADERS,
    ).json()

    response = client.post(
        f"/transactions/{parent['id']}/settle",
        json={"amount": "100.00", "payment_date": "2024-02-03"},
        headers=HEADERS,
    )
    assert response.status_code == 201

    summary = client.get("/summary", headers=HEADERS).json()
    assert summary["total_balance"] == "900.00"
    assert summary["total_expense"] == "100.00"

    conflict = client.delete(f"/transactions/{parent['id']}", headers=HEADERS)
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "INTEGRITY_ERROR"


def test_category_tree_and_parent_options(client):
    root = client.post("/categories", json={"name": "Home", "type": "EXPENSE"}, headers=HEADERS).json()
    child = client.post(
        "/categories",
        json={"name": "Power", "type": "EXPENSE", "parent_id": root["id"]},
        headers=HEADERS,
    ).json()
    client.post("/categories", json={"name": "Car", "type": "EXPENSE"}, headers=HEADERS)

    tree = client.get("/categories/tree", params={"type": "EXPENSE"}, headers=HEADERS).json()["tree"]
    assert [(node["name"], node["code"]) for node in tree] == [("Car", "1"), ("Home", "2")]
    assert tree[1]["children"][0]["code"] == "2.1"

    options = client.get(
        "/categories/parent-options",
        params={"type": "EXPENSE", "editing_id": root["id"]},
        headers=HEADERS,
    ).json()["options"]
    assert [option["name"] for option in options] == ["Car"]

    blocked = client.delete(f"/categories/{root['id']}", headers=HEADERS)
    assert blocked.status_code == 409
    assert client.delete(f"/categories/{child['id']}", headers=HEADERS).status_code == 204


def test_subscription_webhook_flow(client):
    created = client.post(
        "/subscription",
        json={"expiration_date": "2099-01-15", "subscription_price": "29.90"},
        headers=HEADERS,
    )
    assert created.status_code == 201
    assert client.get("/subscription/status", headers=HEADERS).json() == {"status": "PAID", "days_overdue": 0}

    payload = {"event": "PAYMENT_RECEIVED", "transactionId": "pay-1", "userId": USER}
    first = client.post("/webhooks/payment", json=payload)
    assert first.status_code == 200
    assert first.json()["subscription"]["expiration_date"] == "2099-02-15"
    assert first.json()["invoice"]["due_date"] == "2099-01-15"

    again = client.post("/webhooks/payment", json=payload).json()
    assert again["invoice"] is None
    assert again["subscription"]["expiration_date"] == "2099-02-15"

    invoices = client.get("/invoices", headers=HEADERS).json()
    assert invoices["count"] == 1


def test_profile_document_validation(client):
    client.post("/subscription", json={"expiration_date": "2099-01-15"}, headers=HEADERS)
    bad = client.put("/subscription/profile", json={"account_type": "BUSINESS", "document": "123"}, headers=HEADERS)
    assert bad.status_code == 422
    good = client.put(
        "/subscription/profile",
        json={"account_type": "BUSINESS", "document": "12.345.678/0001-95"},
        headers=HEADERS,
    )
    assert good.json()["account_type"] == "BUSINESS"


def test_investment_flow(client):
    asset = client.post(
        "/investments/assets",
        json={"name": "Acme", "type": "STOCK", "ticker": "ACME", "current_price": "12"},
        headers=HEADERS,
    ).json()

    response = client.post(
        "/investments/transactions",
        json={"asset_id": asset["id"], "type": "BUY", "price": "10", "quantity": "10", "date": "2024-05-02"},
        headers=HEADERS,
    )
    assert response.status_code == 201
    assert response.json()["asset"]["quantity"] == "10"

    oversell = client.post(
        "/investments/transactions",
        json={"asset_id": asset["id"], "type": "SELL", "price": "10", "quantity": "11", "date": "2024-05-03"},
        headers=HEADERS,
    )
    assert oversell.status_code == 422

    summary = client.get("/investments/summary", headers=HEADERS).json()
    assert summary["invested"] == "100.00"
    assert summary["market_value"] == "120.00"
    assert summary["allocation"] == {"STOCK": "120.00"}

    refresh = client.post(f"/investments/assets/{asset['id']}/refresh-price", headers=HEADERS)
    assert refresh.status_code == 503


def test_reports(client, account_id):
    sales = client.post(
        "/categories",
        json={"name": "Sales", "type": "INCOME", "dre_category": "DRE_GROSS_REVENUE"},
        headers=HEADERS,
    ).json()
    client.post(
        "/transactions",
        json={
            "description": "Invoice 7",
            "amount": "500.00",
            "date": "2024-06-10",
            "type": "INCOME",
            "account_id": account_id,
            "category_id": sales["id"],
        },
        headers=HEADERS,
    )

    dre = client.get("/reports/dre", params={"month": "2024-06"}, headers=HEADERS).json()
    assert dre["basis"] == "COMPETENCE"
    assert dre["gross_revenue"] == "500.00"
    assert dre["net_profit"] == "500.00"
    assert dre["vertical_analysis"]["net_profit"] == "100.00"
    assert dre["vertical_analysis"]["taxes"] == "0.00"

    cash = client.get("/reports/dre", params={"month": "2024-06", "basis": "CASH"}, headers=HEADERS).json()
    assert cash["gross_revenue"] == "0"

    monthly = client.get("/reports/monthly", params={"month": "2024-06"}, headers=HEADERS).json()
    assert monthly["income"] == "500.00"

    assert client.get("/reports/dre", params={"month": "June"}, headers=HEADERS).status_code == 422


def test_account_edit(client, account_id):
    response = client.put(
        f"/accounts/{account_id}",
        json={"name": "Main", "balance": "1250.50", "color": "green", "type": "CASH"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    account = client.get("/accounts", headers=HEADERS).json()["accounts"][0]
    assert (account["name"], account["balance"], account["type"]) == ("Main", "1250.50", "CASH")

    missing = client.put("/accounts/missing", json={"name": "Ghost"}, headers=HEADERS)
    assert missing.status_code == 404


def test_reset_user_data(client, account_id, category_id):
    client.post(
        "/transactions",
        json={
            "description": "Groceries",
            "amount": "40.00",
            "date": "2024-02-01",
            "type": "EXPENSE",
            "account_id": account_id,
            "category_id": category_id,
            "status": "PAID",
            "payment_date": "2024-02-01",
        },
        headers=HEADERS,
    )

    response = client.post("/reset", json={"delete_categories": True}, headers=HEADERS)

    assert response.json() == {"transactions_deleted": 1, "accounts_zeroed": 1, "categories_deleted": 1}
    assert client.get("/transactions", headers=HEADERS).json()["count"] == 0
    assert client.get("/accounts", headers=HEADERS).json()["accounts"][0]["balance"] == "0.00"
    assert client.get("/categories/tree", params={"type": "EXPENSE"}, headers=HEADERS).json()["tree"] == []
