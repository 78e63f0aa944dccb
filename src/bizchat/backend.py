"""Concrete implementations for business-data backends.

The backend owns customers, catalog items, invoices with their line items,
expenses and the business profile. Each method is a single atomic operation;
composing several of them (and undoing partial work) is the caller's job.
All methods are coroutines and raise ``BackendError`` on failure.
"""

import copy
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, List, Optional, Sequence

from .exceptions import BackendError
from .records import BusinessProfile, Customer, Expense, Invoice, Item, LineItem


class Backend(ABC):
    """Interface for reading and writing business records."""

    # --- Business profile ---
    @abstractmethod
    async def get_business_profile(self, user_id: str) -> Optional[BusinessProfile]:
        """Returns the user's business profile, if one exists."""
        pass

    @abstractmethod
    async def set_invoice_sequence(self, user_id: str, sequence: int) -> None:
        """Stores the last invoice sequence number used."""
        pass

    # --- Customers ---
    @abstractmethod
    async def list_customers(self, user_id: str, limit: int = 10) -> List[Customer]:
        """Lists customers, most recently updated first."""
        pass

    @abstractmethod
    async def search_customers(
        self, user_id: str, query: str, limit: int = 10
    ) -> List[Customer]:
        """Case-insensitive substring search over name, email and phone."""
        pass

    @abstractmethod
    async def get_customer(self, user_id: str, customer_id: str) -> Optional[Customer]:
        pass

    @abstractmethod
    async def insert_customer(self, user_id: str, customer: Customer) -> Customer:
        pass

    @abstractmethod
    async def delete_customer(self, user_id: str, customer_id: str) -> None:
        pass

    # --- Catalog ---
    @abstractmethod
    async def list_items(
        self, user_id: str, query: Optional[str] = None, limit: int = 20
    ) -> List[Item]:
        """Lists sale-enabled catalog items, optionally filtered by name/description."""
        pass

    # --- Invoices ---
    @abstractmethod
    async def insert_invoice(self, user_id: str, invoice: Invoice) -> Invoice:
        pass

    @abstractmethod
    async def insert_line_items(
        self, user_id: str, line_items: Sequence[LineItem]
    ) -> List[LineItem]:
        """Inserts all line items or none of them."""
        pass

    @abstractmethod
    async def delete_invoice(self, user_id: str, invoice_id: str) -> None:
        """Deletes an invoice together with its line items."""
        pass

    @abstractmethod
    async def find_invoices(self, user_id: str, query: str, limit: int = 10) -> List[Invoice]:
        """Searches invoices by id or invoice-number substring."""
        pass

    @abstractmethod
    async def update_invoice_status(
        self, user_id: str, invoice_id: str, status: str
    ) -> Invoice:
        pass

    @abstractmethod
    async def list_invoices(
        self,
        user_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[Invoice]:
        """Lists invoices issued within ``[start, end]``, most recently updated first."""
        pass

    @abstractmethod
    async def list_line_items(self, user_id: str, invoice_id: str) -> List[LineItem]:
        pass

    # --- Expenses ---
    @abstractmethod
    async def insert_expense(self, user_id: str, expense: Expense) -> Expense:
        pass

    @abstractmethod
    async def list_expenses(
        self,
        user_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[Expense]:
        """Lists expenses dated within ``[start, end]``, most recently updated first."""
        pass


class InMemory(Backend):
    """Keeps business records in per-user dictionaries.

    Useful for tests, demos and as the reference for the backend contract.
    Records are copied in and out so callers never share mutable state with
    the backend.
    """

    def __init__(self):
        self._profiles: Dict[str, BusinessProfile] = {}
        self._customers: Dict[str, Dict[str, Customer]] = {}
        self._items: Dict[str, Dict[str, Item]] = {}
        self._invoices: Dict[str, Dict[str, Invoice]] = {}
        self._line_items: Dict[str, Dict[str, List[LineItem]]] = {}
        self._expenses: Dict[str, Dict[str, Expense]] = {}

    # Seeding helpers, not part of the Backend contract
    def add_profile(self, user_id: str, profile: BusinessProfile) -> BusinessProfile:
        self._profiles[user_id] = profile.model_copy(update={"user_id": user_id})
        return self._profiles[user_id]

    def add_customer(self, user_id: str, customer: Customer) -> Customer:
        record = customer.model_copy(update={"user_id": user_id})
        self._customers.setdefault(user_id, {})[record.id] = record
        return record

    def add_item(self, user_id: str, item: Item) -> Item:
        record = item.model_copy(update={"user_id": user_id})
        self._items.setdefault(user_id, {})[record.id] = record
        return record

    def add_invoice(self, user_id: str, invoice: Invoice) -> Invoice:
        record = invoice.model_copy(update={"user_id": user_id})
        self._invoices.setdefault(user_id, {})[record.id] = record
        return record

    def add_expense(self, user_id: str, expense: Expense) -> Expense:
        record = expense.model_copy(update={"user_id": user_id})
        self._expenses.setdefault(user_id, {})[record.id] = record
        return record

    @staticmethod
    def _recent_first(records, limit: Optional[int] = None):
        ordered = sorted(records, key=lambda r: r.updated_at, reverse=True)
        ordered = ordered[:limit] if limit is not None else ordered
        return [r.model_copy(deep=True) for r in ordered]

    async def get_business_profile(self, user_id):
        profile = self._profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def set_invoice_sequence(self, user_id, sequence):
        profile = self._profiles.get(user_id)
        if profile is None:
            raise BackendError(f"No business profile for user {user_id}")
        profile.invoice_number_sequence = sequence

    async def list_customers(self, user_id, limit=10):
        return self._recent_first(self._customers.get(user_id, {}).values(), limit)

    async def search_customers(self, user_id, query, limit=10):
        needle = query.lower().strip()
        matches = [
            c
            for c in self._customers.get(user_id, {}).values()
            if needle in c.name.lower()
            or (c.email and needle in c.email.lower())
            or (c.phone and needle in c.phone)
        ]
        matches.sort(key=lambda c: c.name.lower())
        return [c.model_copy() for c in matches[:limit]]

    async def get_customer(self, user_id, customer_id):
        customer = self._customers.get(user_id, {}).get(customer_id)
        return customer.model_copy() if customer else None

    async def insert_customer(self, user_id, customer):
        return self.add_customer(user_id, customer).model_copy()

    async def delete_customer(self, user_id, customer_id):
        if self._customers.get(user_id, {}).pop(customer_id, None) is None:
            raise BackendError(f"Customer {customer_id} not found")

    async def list_items(self, user_id, query=None, limit=20):
        items = [i for i in self._items.get(user_id, {}).values() if i.enable_sale_info]
        if query:
            needle = query.lower()
            items = [
                i
                for i in items
                if needle in i.name.lower()
                or (i.description and needle in i.description.lower())
            ]
        items.sort(key=lambda i: i.name.lower())
        return [i.model_copy() for i in items[:limit]]

    async def insert_invoice(self, user_id, invoice):
        invoices = self._invoices.setdefault(user_id, {})
        if any(i.invoice_number == invoice.invoice_number for i in invoices.values()):
            raise BackendError(f"Invoice number {invoice.invoice_number} already exists")
        return self.add_invoice(user_id, invoice).model_copy()

    async def insert_line_items(self, user_id, line_items):
        invoices = self._invoices.get(user_id, {})
        for line in line_items:
            if line.invoice_id not in invoices:
                raise BackendError(f"Invoice {line.invoice_id} not found")
        stored = self._line_items.setdefault(user_id, {})
        for line in line_items:
            stored.setdefault(line.invoice_id, []).append(line.model_copy())
        return [line.model_copy() for line in line_items]

    async def delete_invoice(self, user_id, invoice_id):
        if self._invoices.get(user_id, {}).pop(invoice_id, None) is None:
            raise BackendError(f"Invoice {invoice_id} not found")
        self._line_items.get(user_id, {}).pop(invoice_id, None)

    async def find_invoices(self, user_id, query, limit=10):
        needle = query.lower().strip()
        matches = [
            i
            for i in self._invoices.get(user_id, {}).values()
            if needle == i.id or needle in i.invoice_number.lower()
        ]
        return self._recent_first(matches, limit)

    async def update_invoice_status(self, user_id, invoice_id, status):
        invoice = self._invoices.get(user_id, {}).get(invoice_id)
        if invoice is None:
            raise BackendError(f"Invoice {invoice_id} not found")
        invoice.status = status
        return invoice.model_copy()

    async def list_invoices(self, user_id, start=None, end=None, limit=None):
        invoices = [
            i
            for i in self._invoices.get(user_id, {}).values()
            if (start is None or i.issue_date >= start) and (end is None or i.issue_date <= end)
        ]
        return self._recent_first(invoices, limit)

    async def list_line_items(self, user_id, invoice_id):
        return copy.deepcopy(self._line_items.get(user_id, {}).get(invoice_id, []))

    async def insert_expense(self, user_id, expense):
        return self.add_expense(user_id, expense).model_copy()

    async def list_expenses(self, user_id, start=None, end=None, limit=None):
        expenses = [
            e
            for e in self._expenses.get(user_id, {}).values()
            if (start is None or e.expense_date >= start) and (end is None or e.expense_date <= end)
        ]
        return self._recent_first(expenses, limit)
