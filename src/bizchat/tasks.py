"""
The guided invoice-creation flow.

The flow's progress lives in ``ConversationContext.current_task`` so that it
survives between independent turns. Steps only move along ``TRANSITIONS``;
input that a step cannot use re-prompts and leaves the task untouched.

customer_search -> customer_disambiguation -> item_selection -> invoice_creation
customer_search -> item_selection
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from . import replies
from .analyzer import extract_customer_name
from .backend import Backend
from .config import Settings, get_settings
from .exceptions import InvalidTransitionError
from .executor import Executor
from .models import (
    Action,
    ActionResult,
    Analysis,
    ConversationContext,
    CreateCustomer,
    CreateInvoice,
    EntityType,
    InvoiceTask,
    NavigateToInvoice,
    TaskStep,
)
from .planner import parse_amount
from .records import Customer, SelectedItem
from .resolver import clarifying_question, identify_missing

logger = logging.getLogger(__name__)

TRANSITIONS = {
    TaskStep.CUSTOMER_SEARCH: {
        TaskStep.CUSTOMER_SEARCH,
        TaskStep.CUSTOMER_DISAMBIGUATION,
        TaskStep.ITEM_SELECTION,
    },
    TaskStep.CUSTOMER_DISAMBIGUATION: {
        TaskStep.CUSTOMER_DISAMBIGUATION,
        TaskStep.ITEM_SELECTION,
    },
    TaskStep.ITEM_SELECTION: {TaskStep.ITEM_SELECTION, TaskStep.INVOICE_CREATION},
    TaskStep.INVOICE_CREATION: set(),
}

EDIT_URL = "/invoices/{invoice_id}/edit"

_CANCEL = re.compile(r"^\s*(cancel|stop|start over|never ?mind|abort)\b", re.IGNORECASE)
_FINISH = re.compile(r"\b(create(?: the)? invoice|finish|done|that's all|that is all)\b", re.IGNORECASE)
_SELECTION = re.compile(r"^\s*#?(\d+)\s*\.?\s*$")


def advance(task: InvoiceTask, step: TaskStep, **updates: Any) -> InvoiceTask:
    """Return ``task`` moved to ``step`` with ``updates`` applied.

    Raises
    ------
    InvalidTransitionError
        If ``step`` is not reachable from the task's current step.
    """
    if step not in TRANSITIONS[task.step]:
        raise InvalidTransitionError(f"Cannot move from {task.step.value} to {step.value}")
    return InvoiceTask.model_validate({**dict(task), **updates, "step": step})


def is_cancel(message: str) -> bool:
    return bool(_CANCEL.match(message))


class FlowOutcome(BaseModel):
    """The result of one turn of the guided flow."""

    message: str
    suggestions: List[str] = Field(default_factory=list)
    # Planned actions the orchestrator still has to gate and execute.
    actions: List[Action] = Field(default_factory=list)
    # Actions that wait for the user's explicit confirmation.
    pending: List[Action] = Field(default_factory=list)
    # Actions already executed by the flow itself.
    executed: List[Action] = Field(default_factory=list)
    data: Optional[Dict[str, Any]] = None


class InvoiceFlow:
    """Drives the invoice task one message at a time."""

    def __init__(
        self,
        backend: Backend,
        executor: Executor,
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self.executor = executor
        self.settings = settings or get_settings()

    async def start(
        self,
        user_id: str,
        analysis: Analysis,
        context: ConversationContext,
        session_id: str,
    ) -> FlowOutcome:
        """Begin a new invoice task from a ``create_invoice`` message."""
        context.current_task = InvoiceTask(
            requested_amount=parse_amount(analysis.first(EntityType.AMOUNT)),
            requested_items=analysis.values(EntityType.PRODUCT, EntityType.SERVICE),
        )
        name = analysis.first(EntityType.CUSTOMER)
        if not name:
            return FlowOutcome(
                message=clarifying_question(identify_missing(analysis, context)),
                suggestions=[c.name for c in context.recent_entities.customers[:3]],
            )
        return await self._search(user_id, name, context)

    async def handle(
        self,
        user_id: str,
        message: str,
        analysis: Analysis,
        context: ConversationContext,
        session_id: str,
    ) -> FlowOutcome:
        """Feed one message to the active task."""
        task = context.current_task
        if task is None:
            raise InvalidTransitionError("No invoice task is active")

        if is_cancel(message):
            context.current_task = None
            return FlowOutcome(
                message="Okay, I've cancelled that invoice. What would you like to do next?",
                suggestions=list(replies.WELCOME_SUGGESTIONS),
            )

        if task.step == TaskStep.CUSTOMER_SEARCH:
            name = analysis.first(EntityType.CUSTOMER) or extract_customer_name(
                message, allow_bare=True
            )
            if not name:
                return FlowOutcome(message=clarifying_question(["customer"]))
            return await self._search(user_id, name, context)
        if task.step == TaskStep.CUSTOMER_DISAMBIGUATION:
            return await self._disambiguate(user_id, message, context)
        if task.step == TaskStep.ITEM_SELECTION:
            return await self._select_items(message, context, session_id)
        return self._reset(context)

    # --- customer_search ---
    async def _search(
        self,
        user_id: str,
        name: str,
        context: ConversationContext,
    ) -> FlowOutcome:
        task = context.current_task
        candidates = await self.backend.search_customers(
            user_id, name, limit=self.settings.customer_search_limit
        )
        logger.debug("Customer search %r matched %d", name, len(candidates))

        if not candidates:
            context.current_task = advance(task, TaskStep.CUSTOMER_SEARCH, search_term=name)
            return FlowOutcome(
                message=(
                    f'I couldn\'t find a customer named "{name}". '
                    "Would you like me to create them? Or tell me another name to search for."
                ),
                suggestions=[f'Create customer "{name}"', "Search for a different customer"],
                pending=[CreateCustomer(name=name)],
            )

        if len(candidates) > 1:
            context.current_task = advance(
                task,
                TaskStep.CUSTOMER_DISAMBIGUATION,
                search_term=name,
                customer_candidates=candidates,
            )
            return FlowOutcome(
                message=(
                    f'I found {len(candidates)} customers matching "{name}". '
                    "Which one did you mean?\n" + replies.numbered_customers(candidates)
                ),
                suggestions=[str(i) for i in range(1, min(len(candidates), 3) + 1)],
            )

        customer = candidates[0]
        if task.requested_amount is not None or task.requested_items:
            return self._planned(customer, context)
        return await self._bind_customer(user_id, customer, context, search_term=name)

    # --- customer_disambiguation ---
    async def _disambiguate(
        self, user_id: str, message: str, context: ConversationContext
    ) -> FlowOutcome:
        task = context.current_task
        candidates = task.customer_candidates
        match = _SELECTION.match(message)
        index = int(match.group(1)) if match else 0
        if not 1 <= index <= len(candidates):
            return FlowOutcome(
                message=(
                    f"Please reply with a number between 1 and {len(candidates)}:\n"
                    + replies.numbered_customers(candidates)
                ),
                suggestions=[str(i) for i in range(1, min(len(candidates), 3) + 1)],
            )
        customer = candidates[index - 1]
        if task.requested_amount is not None or task.requested_items:
            return self._planned(customer, context)
        return await self._bind_customer(user_id, customer, context)

    def _planned(self, customer: Customer, context: ConversationContext) -> FlowOutcome:
        """Hand back a complete invoice plan; the request already named what to bill."""
        task = context.current_task
        context.current_task = None
        context.recent_entities.remember("customers", customer, self.settings.recent_entity_limit)
        return FlowOutcome(
            message="",
            actions=[
                CreateInvoice(
                    customer=customer.name,
                    customer_id=customer.id,
                    items=task.requested_items,
                    amount=task.requested_amount,
                )
            ],
        )

    async def _bind_customer(
        self,
        user_id: str,
        customer: Customer,
        context: ConversationContext,
        **updates: Any,
    ) -> FlowOutcome:
        items = await self.backend.list_items(user_id, limit=self.settings.catalog_limit)
        context.current_task = advance(
            context.current_task,
            TaskStep.ITEM_SELECTION,
            selected_customer=customer,
            available_items=items,
            **updates,
        )
        context.recent_entities.remember("customers", customer, self.settings.recent_entity_limit)

        currency = context.user_preferences.currency
        if not items:
            return FlowOutcome(
                message=(
                    f"Great, the invoice is for {customer.name}. "
                    "Your catalog has no items for sale yet, so add some products or "
                    "services first, or say \"cancel\" to stop."
                ),
                suggestions=["Cancel"],
            )
        return FlowOutcome(
            message=(
                f"Great, the invoice is for {customer.name}. Which items should I add? "
                "Reply with one or more numbers:\n"
                + replies.numbered_items(items, currency)
                + '\nSay "create invoice" when you\'re done.'
            ),
            suggestions=["1", "Create invoice"],
        )

    # --- item_selection ---
    async def _select_items(
        self, message: str, context: ConversationContext, session_id: str
    ) -> FlowOutcome:
        task = context.current_task
        currency = context.user_preferences.currency

        if _FINISH.search(message):
            if not task.selected_items:
                return FlowOutcome(
                    message=(
                        "You haven't selected any items yet. Reply with item numbers first:\n"
                        + replies.numbered_items(task.available_items, currency)
                    ),
                )
            return await self._finalize(context, session_id)

        numbers = [int(n) for n in re.findall(r"\d+", message)]
        available = task.available_items
        if not numbers or any(not 1 <= n <= len(available) for n in numbers):
            listing = replies.numbered_items(available, currency)
            return FlowOutcome(
                message=(
                    f"Please choose items by number (1 to {len(available)}):\n{listing}"
                    if available
                    else 'There are no catalog items to choose from. Say "cancel" to stop.'
                ),
            )

        selected = list(task.selected_items)
        chosen = {item.item_id for item in selected}
        for n in numbers:
            item = available[n - 1]
            if item.id not in chosen:
                selected.append(SelectedItem.from_item(item))
                chosen.add(item.id)
        context.current_task = advance(task, TaskStep.ITEM_SELECTION, selected_items=selected)
        return FlowOutcome(
            message=(
                replies.selected_summary(selected, currency)
                + ' Add more items by number, or say "create invoice" to finish.'
            ),
            suggestions=["Create invoice"],
        )

    async def _finalize(self, context: ConversationContext, session_id: str) -> FlowOutcome:
        task = context.current_task
        customer = task.selected_customer
        action = CreateInvoice(
            customer=customer.name,
            customer_id=customer.id,
            selected_items=task.selected_items,
        )
        result: ActionResult = await self.executor.execute(action, context, session_id)
        if not result.success:
            return FlowOutcome(
                message=replies.result_message(action, result) + " Your selections are kept.",
                suggestions=result.suggestions,
                executed=[action],
            )

        invoice_id = result.data["invoice_id"]
        invoice = next(i for i in context.recent_entities.invoices if i.id == invoice_id)
        context.current_task = advance(task, TaskStep.INVOICE_CREATION, completed_invoice=invoice)

        navigate = NavigateToInvoice(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            edit_url=EDIT_URL.format(invoice_id=invoice.id),
        )
        await self.executor.execute(navigate, context, session_id)
        return FlowOutcome(
            message=replies.success_message(action, result) + " I've opened it so you can review it.",
            suggestions=result.suggestions,
            executed=[action, navigate],
            data=result.data,
        )

    # --- invoice_creation ---
    def _reset(self, context: ConversationContext) -> FlowOutcome:
        invoice = context.current_task.completed_invoice
        context.current_task = None
        return FlowOutcome(
            message=(
                f"Invoice {invoice.invoice_number} is all set. "
                "Would you like to start something new?"
            ),
            suggestions=list(replies.WELCOME_SUGGESTIONS),
        )
