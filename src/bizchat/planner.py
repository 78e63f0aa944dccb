"""Maps a resolved analysis onto concrete, typed actions.

Every intent has an entry in ``PLANS``. Intents without a supported action map
to an empty plan, which the orchestrator treats as a no-op.
"""

import re
from typing import Callable, Dict, List, Optional

from .models import (
    Action,
    Analysis,
    ConversationContext,
    CreateCustomer,
    CreateExpense,
    CreateInvoice,
    DeleteCustomer,
    DeleteInvoice,
    EntityType,
    FindInvoice,
    GenerateFinancialReport,
    Intent,
    SearchCustomers,
    SendInvoice,
)

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def parse_amount(value: Optional[str]) -> Optional[float]:
    """Parse ``"$1,500.00"``-style text into a float rounded to cents."""
    if not value:
        return None
    match = _NUMBER.search(value.replace(",", ""))
    if not match:
        return None
    return round(float(match.group()), 2)


def _create_invoice(analysis, context):
    return [
        CreateInvoice(
            customer=analysis.first(EntityType.CUSTOMER),
            items=analysis.values(EntityType.PRODUCT, EntityType.SERVICE),
            amount=parse_amount(analysis.first(EntityType.AMOUNT)),
        )
    ]


def _create_customer(analysis, context):
    return [CreateCustomer(name=analysis.first(EntityType.CUSTOMER))]


def _find_customer(analysis, context):
    return [SearchCustomers(query=analysis.first(EntityType.CUSTOMER))]


def _add_expense(analysis, context):
    return [
        CreateExpense(
            amount=parse_amount(analysis.first(EntityType.AMOUNT)),
            description=analysis.first(EntityType.EXPENSE, EntityType.SERVICE, EntityType.PRODUCT),
            category=analysis.first(EntityType.CATEGORY),
        )
    ]


def _report(report_type: str):
    def plan(analysis, context):
        return [
            GenerateFinancialReport(
                period=analysis.first(EntityType.DATE), report_type=report_type
            )
        ]

    return plan


def _send_invoice(analysis, context):
    return [SendInvoice(invoice=analysis.first(EntityType.INVOICE))]


def _delete_invoice(analysis, context):
    return [DeleteInvoice(invoice=analysis.first(EntityType.INVOICE))]


def _delete_customer(analysis, context):
    return [DeleteCustomer(customer=analysis.first(EntityType.CUSTOMER))]


def _track_payment(analysis, context):
    return [FindInvoice(query=analysis.first(EntityType.INVOICE))]


def _no_action(analysis, context):
    return []


PLANS: Dict[Intent, Callable[[Analysis, ConversationContext], List[Action]]] = {
    Intent.CREATE_INVOICE: _create_invoice,
    Intent.EDIT_INVOICE: _no_action,
    Intent.SEND_INVOICE: _send_invoice,
    Intent.TRACK_PAYMENT: _track_payment,
    Intent.DELETE_INVOICE: _delete_invoice,
    Intent.CREATE_CUSTOMER: _create_customer,
    Intent.FIND_CUSTOMER: _find_customer,
    Intent.UPDATE_CUSTOMER: _no_action,
    Intent.DELETE_CUSTOMER: _delete_customer,
    Intent.ADD_EXPENSE: _add_expense,
    Intent.CATEGORIZE_EXPENSE: _no_action,
    Intent.SCAN_RECEIPT: _no_action,
    Intent.GENERATE_REPORT: _report("detailed"),
    Intent.SHOW_ANALYTICS: _no_action,
    Intent.FINANCIAL_SUMMARY: _report("summary"),
    Intent.HELP: _no_action,
    Intent.CLARIFICATION: _no_action,
    Intent.GREETING: _no_action,
    Intent.UNKNOWN: _no_action,
}


def plan(analysis: Analysis, context: ConversationContext) -> List[Action]:
    """Turn the intent and entities of one message into executable actions."""
    return PLANS[analysis.intent](analysis, context)
