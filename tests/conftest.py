"""Shared pytest fixtures: a throwaway SQLite repository and seeded records."""
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from finance_tracker.config import AppConfig
from finance_tracker.database import SQLiteRepository
from finance_tracker.models import Account, Category, TransactionType
from finance_tracker.services import AccountService, CategoryService, LedgerService

USER = "user-1"


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(project_root=tmp_path, database_file=tmp_path / "test.db")


@pytest.fixture
def repository(config):
    repo = SQLiteRepository(config.database_file)
    repo.initialise_schema()
    yield repo
    repo.close()


@pytest.fixture
def accounts(repository) -> AccountService:
    return AccountService(repository)


@pytest.fixture
def categories(repository) -> CategoryService:
    return CategoryService(repository)


@pytest.fixture
def ledger(config, repository) -> LedgerService:
    return LedgerService(config, repository)


@pytest.fixture
def account(accounts) -> Account:
    return accounts.create(Account(user_id=USER, name="Checking", balance=Decimal("1000.00")))


@pytest.fixture
def savings(accounts) -> Account:
    return accounts.create(Account(user_id=USER, name="Savings"))


@pytest.fixture
def expense_category(categories) -> Category:
    return categories.create(Category(user_id=USER, name="Groceries", type=TransactionType.EXPENSE))


@pytest.fixture
def income_category(categories) -> Category:
    return categories.create(Category(user_id=USER, name="Salary", type=TransactionType.INCOME))


@pytest.fixture
def today() -> date:
    return date(2024, 1, 15)
