"""Builds the initial conversation context for a new session."""

import logging
from typing import List, Optional

from .backend import Backend
from .config import Settings, get_settings
from .exceptions import BackendError
from .models import BusinessContext, ConversationContext, RecentEntities, UserPreferences
from .records import Expense, Invoice

logger = logging.getLogger(__name__)


def default_preferences(settings: Settings) -> UserPreferences:
    return UserPreferences(
        default_template=settings.default_template,
        currency=settings.default_currency,
        date_format=settings.default_date_format,
        language=settings.default_language,
    )


def minimal_context(settings: Optional[Settings] = None) -> ConversationContext:
    """A context with defaults only, used when the backend cannot be read."""
    settings = settings or get_settings()
    return ConversationContext(
        user_preferences=default_preferences(settings),
        business_context=BusinessContext(),
    )


def recent_activity(invoices: List[Invoice], expenses: List[Expense]) -> List[str]:
    activity = [
        f"Invoice {i.invoice_number} for {i.customer_name or 'a customer'}: "
        f"{i.currency} {i.total:.2f} ({i.status})"
        for i in invoices
    ]
    activity.extend(
        f"Expense: {e.description} {e.currency} {e.amount:.2f}" for e in expenses
    )
    return activity


async def build_context(
    backend: Backend, user_id: str, settings: Optional[Settings] = None
) -> ConversationContext:
    """Snapshot the user's recent records and business profile.

    The snapshot is taken once per session. If any read fails, a minimal
    context is returned instead so that the conversation can still start.
    """
    settings = settings or get_settings()
    try:
        customers = await backend.list_customers(user_id, limit=settings.recent_customers)
        invoices = await backend.list_invoices(user_id, limit=settings.recent_invoices)
        expenses = await backend.list_expenses(user_id, limit=settings.recent_expenses)
        items = await backend.list_items(user_id, limit=settings.recent_items)
        profile = await backend.get_business_profile(user_id)
    except BackendError:
        logger.error("Could not build context for user %s", user_id, exc_info=True)
        return minimal_context(settings)

    preferences = default_preferences(settings)
    latest = sorted(
        [*invoices, *expenses], key=lambda record: record.updated_at, reverse=True
    )
    if latest:
        preferences.currency = latest[0].currency

    return ConversationContext(
        recent_entities=RecentEntities(
            customers=customers, invoices=invoices, expenses=expenses, items=items
        ),
        user_preferences=preferences,
        business_context=BusinessContext(
            business_profile=profile,
            recent_activity=recent_activity(invoices, expenses),
        ),
    )
