"""Missing-information resolution.

For each intent, a fixed set of fields must be known before any action can be
planned. ``identify_missing`` reports the absent ones and
``clarifying_question`` turns them into a single question for the user.
"""

from typing import Callable, Dict, List, Optional

from .models import Analysis, ConversationContext, EntityType, Intent, TaskStep

CLARIFICATION_PREFIX = "I'd be happy to help you with that! I need a bit more information: "

QUESTIONS: Dict[str, str] = {
    "customer": "Which customer is this for?",
    "customer_name": "What is the customer's name?",
    "customer_selection": "Which of the matching customers did you mean? Reply with its number.",
    "items": "What products or services should I include?",
    "description": "What was the expense for?",
    "search_query": "Who are you looking for? A name, email or phone number works.",
    "amount": "What was the amount?",
    "time_period": "Which period should the report cover (this month, last month, this quarter or this year)?",
    "invoice": "Which invoice? Please give its number (for example INV-2024-001).",
}

Check = Callable[[Analysis, ConversationContext], List[str]]


def _requires(field: str, *types: EntityType) -> Check:
    def check(analysis: Analysis, context: ConversationContext) -> List[str]:
        return [] if analysis.has(*types) else [field]

    return check


def _nothing(analysis: Analysis, context: ConversationContext) -> List[str]:
    return []


def _invoice_fields(analysis: Analysis, context: ConversationContext) -> List[str]:
    task = context.current_task
    if task is not None:
        if task.step == TaskStep.CUSTOMER_DISAMBIGUATION:
            return ["customer_selection"]
        if task.step == TaskStep.ITEM_SELECTION:
            return [] if task.selected_items else ["items"]
        if task.step == TaskStep.INVOICE_CREATION:
            return []

    missing = []
    if not analysis.has(EntityType.CUSTOMER):
        missing.append("customer")
    # A bare amount becomes a single generic line item.
    if not analysis.has(EntityType.PRODUCT, EntityType.SERVICE, EntityType.AMOUNT):
        missing.append("items")
    return missing


REQUIRED: Dict[Intent, Check] = {
    Intent.CREATE_INVOICE: _invoice_fields,
    Intent.EDIT_INVOICE: _requires("invoice", EntityType.INVOICE),
    Intent.SEND_INVOICE: _requires("invoice", EntityType.INVOICE),
    Intent.TRACK_PAYMENT: _nothing,
    Intent.DELETE_INVOICE: _requires("invoice", EntityType.INVOICE),
    Intent.CREATE_CUSTOMER: _requires("customer_name", EntityType.CUSTOMER),
    Intent.FIND_CUSTOMER: _requires("customer_name", EntityType.CUSTOMER),
    Intent.UPDATE_CUSTOMER: _requires("customer_name", EntityType.CUSTOMER),
    Intent.DELETE_CUSTOMER: _requires("customer_name", EntityType.CUSTOMER),
    Intent.ADD_EXPENSE: _requires("amount", EntityType.AMOUNT),
    Intent.CATEGORIZE_EXPENSE: _nothing,
    Intent.SCAN_RECEIPT: _nothing,
    Intent.GENERATE_REPORT: _requires("time_period", EntityType.DATE),
    Intent.SHOW_ANALYTICS: _nothing,
    Intent.FINANCIAL_SUMMARY: _nothing,
    Intent.HELP: _nothing,
    Intent.CLARIFICATION: _nothing,
    Intent.GREETING: _nothing,
    Intent.UNKNOWN: _nothing,
}


def identify_missing(analysis: Analysis, context: ConversationContext) -> List[str]:
    """Return the names of the required fields ``analysis`` does not supply."""
    return REQUIRED[analysis.intent](analysis, context)


def clarifying_question(missing: List[str]) -> Optional[str]:
    """Phrase one question covering every missing field, or None if nothing is missing."""
    if not missing:
        return None
    questions = [QUESTIONS.get(field, f"Could you tell me the {field.replace('_', ' ')}?") for field in missing]
    return CLARIFICATION_PREFIX + " ".join(questions)
