"""User-facing phrasing for assistant replies."""

from typing import Dict, List, Optional, Sequence

from .models import Action, ActionResult, ConversationContext, Intent
from .records import Customer, Item, SelectedItem
from .resolver import QUESTIONS

WELCOME_SUGGESTIONS = [
    "Create an invoice",
    "Add a new customer",
    "Record an expense",
    "Show this month's summary",
]

HELP_TEXT = """Here's what I can help you with:

- **Invoices**: "Create an invoice for James", "Send invoice INV-2024-001", "Is invoice INV-2024-001 paid?"
- **Customers**: "Add customer Jane Doe", "Find customer Smith"
- **Expenses**: "I spent $45 on office supplies"
- **Reports**: "Show me a report for last month", "Give me a financial summary"

Actions that send or delete things, or that are worth more than your confirmation limit, will wait for your approval."""

OUT_OF_SCOPE: Dict[Intent, str] = {
    Intent.EDIT_INVOICE: "Editing invoices isn't something I can do from the chat yet. You can open the invoice from the invoices page to edit it.",
    Intent.UPDATE_CUSTOMER: "I can't update customer details from the chat yet. You can edit them on the customers page.",
    Intent.CATEGORIZE_EXPENSE: "Expense categorization isn't available in the chat yet.",
    Intent.SCAN_RECEIPT: "Receipt scanning isn't available in the chat yet. You can upload receipts from the expenses page.",
    Intent.SHOW_ANALYTICS: "Charts aren't available in the chat yet, but I can give you a financial summary. Just ask for one.",
    Intent.CLARIFICATION: "Sorry if that was unclear. Could you tell me what you'd like to do?",
}

REJECTED = "Understood, I won't proceed with that action. Is there anything else I can help you with?"
APOLOGY = "I'm sorry, something went wrong while handling that. Please try again."
NOT_SIGNED_IN = "You need to be signed in to use the assistant. Please sign in again and retry."
UNKNOWN = (
    "I'm not sure I understood that. I can help with invoices, customers, "
    "expenses and reports. Type \"help\" to see some examples."
)


def money(amount: float, currency: str = "USD") -> str:
    if currency == "USD":
        return f"${amount:,.2f}"
    return f"{currency} {amount:,.2f}"


def welcome(context: ConversationContext) -> str:
    profile = context.business_profile
    greeting = f"Hi! I'm your business assistant for {profile.name}." if profile else "Hi! I'm your business assistant."
    lines = [greeting, "I can create invoices, manage customers, record expenses and summarize your finances."]
    recent = context.recent_entities.customers
    if recent:
        names = ", ".join(c.name for c in recent[:3])
        lines.append(f"Your recent customers include {names}.")
    lines.append("What would you like to do?")
    return " ".join(lines)


def greeting(context: ConversationContext) -> str:
    profile = context.business_profile
    name = f" How can I help {profile.name} today?" if profile else " How can I help you today?"
    return "Hello!" + name


def needs_info_message(result: ActionResult) -> str:
    if result.needs_info == "customer_not_found":
        return "I couldn't find that customer. Would you like me to create them, or search for someone else?"
    question = QUESTIONS.get(result.needs_info or "", "Could you give me a bit more detail?")
    return f"I need a bit more information: {question}"


def success_message(action: Action, result: ActionResult) -> str:
    data = result.data or {}
    currency = data.get("currency", "USD")
    if action.type == "create_invoice":
        return (
            f"I've created invoice {data['invoice_number']} for {data['customer_name']} "
            f"totaling {money(data['total'], currency)}. It's due on {data['due_date']}."
        )
    if action.type == "create_customer":
        return f"I've added {data['name']} to your customers."
    if action.type == "create_expense":
        return f"I've recorded an expense of {money(data['amount'], currency)} for {data['description']}."
    if action.type == "search_customers":
        lines = [f"I found {data['count']} matching customer(s):"]
        for i, customer in enumerate(data["customers"], 1):
            email = f" ({customer['email']})" if customer.get("email") else ""
            lines.append(f"{i}. {customer['name']}{email}")
        return "\n".join(lines)
    if action.type == "generate_financial_report":
        m = data["metrics"]
        return "\n".join(
            [
                f"Here's your financial summary for {data['period']}:",
                f"- Revenue: {money(m['total_revenue'], currency)}",
                f"- Expenses: {money(m['total_expenses'], currency)}",
                f"- Profit: {money(m['profit'], currency)} ({m['profit_margin']}% margin)",
                f"- Outstanding: {money(m['outstanding_invoices'], currency)}",
                f"- {m['invoice_count']} invoice(s), {m['expense_count']} expense(s)",
            ]
        )
    if action.type == "find_invoice":
        if not data["count"]:
            return "I couldn't find any matching invoices."
        lines = [f"I found {data['count']} invoice(s):"]
        for invoice in data["invoices"]:
            lines.append(
                f"- {invoice['invoice_number']}: {money(invoice['total'], invoice['currency'])} ({invoice['status']})"
            )
        return "\n".join(lines)
    if action.type == "send_invoice":
        return f"Invoice {data['invoice_number']} has been marked as sent."
    if action.type == "delete_invoice":
        return f"Invoice {data['invoice_number']} has been deleted."
    if action.type == "delete_customer":
        return f"{data['name']} has been removed from your customers."
    if action.type == "navigate_to_invoice":
        return f"Opening invoice {data.get('invoice_number') or data['invoice_id']}."
    return "Done."


def result_message(action: Action, result: ActionResult) -> str:
    if result.success:
        return success_message(action, result)
    if result.needs_info:
        return needs_info_message(result)
    return f"I couldn't complete that. {result.error}"


def describe(action: Action, currency: str = "USD") -> str:
    """One-line description of a pending action, for confirmation prompts."""
    if action.type == "create_invoice":
        target = action.customer or "the customer"
        if action.estimated_total:
            return f"create an invoice for {target} totaling {money(action.estimated_total, currency)}"
        return f"create an invoice for {target}"
    if action.type == "create_customer":
        return f'create the customer "{action.name}"'
    if action.type == "create_expense":
        return f"record an expense of {money(action.amount or 0, currency)}"
    if action.type == "send_invoice":
        return f"send invoice {action.invoice}"
    if action.type == "delete_invoice":
        return f"delete invoice {action.invoice}"
    if action.type == "delete_customer":
        return f'delete the customer "{action.customer}"'
    return action.type.replace("_", " ")


def confirmation_message(actions: Sequence[Action], currency: str = "USD") -> str:
    described = "; ".join(describe(a, currency) for a in actions)
    return f"Just to confirm: I'm about to {described}. Shall I go ahead?"


def suggested_actions(intent: Intent, results: Sequence[ActionResult] = ()) -> List[str]:
    suggestions: List[str] = []
    for result in results:
        suggestions.extend(s for s in result.suggestions if s not in suggestions)
    if suggestions:
        return suggestions[:4]
    if intent in (Intent.GREETING, Intent.HELP, Intent.UNKNOWN):
        return list(WELCOME_SUGGESTIONS)
    return []


def numbered_customers(customers: Sequence[Customer]) -> str:
    lines = []
    for i, customer in enumerate(customers, 1):
        details = ", ".join(part for part in (customer.email, customer.city) if part)
        lines.append(f"{i}. {customer.name}" + (f" ({details})" if details else ""))
    return "\n".join(lines)


def numbered_items(items: Sequence[Item], currency: str = "USD") -> str:
    return "\n".join(
        f"{i}. {item.name} - {money(item.sale_price, currency)}/{item.unit}"
        for i, item in enumerate(items, 1)
    )


def selected_summary(items: Sequence[SelectedItem], currency: str = "USD") -> str:
    names = ", ".join(item.name for item in items)
    subtotal = round(sum(item.total for item in items), 2)
    return f"Selected so far: {names}. Subtotal: {money(subtotal, currency)}."


def out_of_scope(intent: Intent) -> Optional[str]:
    return OUT_OF_SCOPE.get(intent)
