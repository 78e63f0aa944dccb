"""
Core pytest configuration and fixtures for bizchat testing.

This module provides shared test fixtures: sample business records, a seeded
in-memory backend, a fixed "today", and pre-wired pillars for unit and
integration tests.
"""

import tempfile
from datetime import date, timedelta
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import pytest
from bizchat import Assistant
from bizchat.auth import SingleUser
from bizchat.backend import InMemory as InMemoryBackend
from bizchat.config import Settings
from bizchat.executor import Executor
from bizchat.llm import NoLLM, Scripted
from bizchat.models import ConversationContext
from bizchat.records import BusinessProfile, Customer, Expense, Invoice, Item
from bizchat.tasks import InvoiceFlow

TODAY = date(2024, 3, 15)
USER_ID = "owner"

# ===== CONFIGURATION FIXTURES =====


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only, independent of any .env file."""
    return Settings(_env_file=None)


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def profile() -> BusinessProfile:
    return BusinessProfile(
        name="Acme Studio",
        email="hello@acme.example",
        default_tax_rate=10.0,
        invoice_number_format="INV-{YYYY}-{###}",
        invoice_number_sequence=4,
    )


@pytest.fixture
def james() -> Customer:
    return Customer(name="James Carter", email="james@carter.example", city="Austin")


@pytest.fixture
def smiths() -> List[Customer]:
    return [
        Customer(name="Anna Smith", email="anna@smith.example"),
        Customer(name="Bob Smith", email="bob@smith.example"),
        Customer(name="Carla Smith", email="carla@smith.example"),
    ]


@pytest.fixture
def catalog() -> List[Item]:
    """Four items, three for sale. Sale items list as Consulting, Hosting, Web Design."""
    return [
        Item(name="Web Design", sale_price=1200.0, unit="project"),
        Item(name="Consulting", sale_price=150.0, unit="hour"),
        Item(name="Hosting", sale_price=25.0, unit="month", tax_rate=0.0),
        Item(name="Internal Time", sale_price=90.0, enable_sale_info=False),
    ]


@pytest.fixture
def backend(profile, james, smiths, catalog) -> InMemoryBackend:
    """In-memory backend seeded with a profile, four customers and a catalog."""
    data = InMemoryBackend()
    data.add_profile(USER_ID, profile)
    for customer in [james, *smiths]:
        data.add_customer(USER_ID, customer)
    for item in catalog:
        data.add_item(USER_ID, item)
    return data


@pytest.fixture
def february_records(backend, james) -> InMemoryBackend:
    """Invoices and expenses around February 2024 for report tests."""
    for number, issued, total, status in [
        ("INV-2024-001", date(2024, 2, 10), 500.0, "paid"),
        ("INV-2024-002", date(2024, 2, 20), 300.0, "sent"),
        ("INV-2024-003", date(2024, 3, 2), 700.0, "paid"),
        ("INV-2024-004", date(2024, 1, 28), 900.0, "paid"),
    ]:
        backend.add_invoice(
            USER_ID,
            Invoice(
                invoice_number=number,
                customer_id=james.id,
                customer_name=james.name,
                issue_date=issued,
                due_date=issued + timedelta(days=30),
                subtotal=total,
                total=total,
                status=status,
            ),
        )
    backend.add_expense(
        USER_ID, Expense(description="Software", amount=150.0, expense_date=date(2024, 2, 5))
    )
    backend.add_expense(
        USER_ID, Expense(description="Travel", amount=60.0, expense_date=date(2024, 3, 1))
    )
    return backend


@pytest.fixture
def context() -> ConversationContext:
    return ConversationContext()


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def temp_dir():
    """Temporary directory for file-based tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ===== MOCK FIXTURES =====


@pytest.fixture
def mock_auth():
    """Mock auth provider for testing."""
    mock = MagicMock()
    mock.get_current_user_id.return_value = USER_ID
    return mock


# ===== PILLAR FIXTURES =====


@pytest.fixture
def executor(backend, settings) -> Executor:
    return Executor(backend, SingleUser(USER_ID), settings, today=lambda: TODAY)


@pytest.fixture
def flow(backend, executor, settings) -> InvoiceFlow:
    return InvoiceFlow(backend, executor, settings)


@pytest.fixture
def all_store_implementations(temp_dir):
    """All store implementations for contract testing."""
    from bizchat import store

    return [
        ("InMemory", store.InMemory()),
        ("File", store.File(str(temp_dir / "file_store"))),
        ("SQLite", store.SQLite(str(temp_dir / "test.db"))),
    ]


# ===== APP FIXTURES =====


@pytest.fixture
def assistant(backend, settings) -> Assistant:
    """
    Provides an Assistant with predictable pillars.

    No language model is configured, so every message goes through the
    rule-based analyzer.
    """
    return Assistant(llm=NoLLM(), backend=backend, settings=settings, today=lambda: TODAY)


@pytest.fixture
def scripted_assistant(backend, settings):
    """Factory for an Assistant whose language model replays canned answers."""

    def build(responses: List[str]) -> Assistant:
        return Assistant(
            llm=Scripted(responses), backend=backend, settings=settings, today=lambda: TODAY
        )

    return build
