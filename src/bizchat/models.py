"""
Defines the core Pydantic data models for the assistant.

These models serve as the formal, validated data contract between all other
pillars: the analyzer produces an ``Analysis``, the planner produces actions,
the executor returns an ``ActionResult`` and the store persists a
``ConversationSession`` with its ``ConversationContext``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import InvalidTransitionError
from .records import BusinessProfile, Customer, Expense, Invoice, Item, SelectedItem

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal["user", "assistant", "system"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ---
class Intent(str, Enum):
    CREATE_INVOICE = "create_invoice"
    EDIT_INVOICE = "edit_invoice"
    SEND_INVOICE = "send_invoice"
    TRACK_PAYMENT = "track_payment"
    DELETE_INVOICE = "delete_invoice"
    CREATE_CUSTOMER = "create_customer"
    FIND_CUSTOMER = "find_customer"
    UPDATE_CUSTOMER = "update_customer"
    DELETE_CUSTOMER = "delete_customer"
    ADD_EXPENSE = "add_expense"
    CATEGORIZE_EXPENSE = "categorize_expense"
    SCAN_RECEIPT = "scan_receipt"
    GENERATE_REPORT = "generate_report"
    SHOW_ANALYTICS = "show_analytics"
    FINANCIAL_SUMMARY = "financial_summary"
    HELP = "help"
    CLARIFICATION = "clarification"
    GREETING = "greeting"
    UNKNOWN = "unknown"


class EntityType(str, Enum):
    CUSTOMER = "customer"
    AMOUNT = "amount"
    DATE = "date"
    PRODUCT = "product"
    SERVICE = "service"
    INVOICE = "invoice"
    EXPENSE = "expense"
    CATEGORY = "category"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class ActionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStep(str, Enum):
    CUSTOMER_SEARCH = "customer_search"
    CUSTOMER_DISAMBIGUATION = "customer_disambiguation"
    ITEM_SELECTION = "item_selection"
    INVOICE_CREATION = "invoice_creation"


# --- Analysis ---
class ConversationEntity(BaseModel):
    """A typed value extracted from a message."""

    type: EntityType
    value: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    resolved_id: Optional[str] = None


class Analysis(BaseModel):
    """The classified intent and entities of one user message."""

    intent: Intent = Intent.UNKNOWN
    entities: List[ConversationEntity] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: Literal["llm", "rules"] = "rules"

    def first(self, *types: EntityType) -> Optional[str]:
        """Return the value of the first entity matching any of ``types``."""
        for entity in self.entities:
            if entity.type in types:
                return entity.value
        return None

    def values(self, *types: EntityType) -> List[str]:
        return [entity.value for entity in self.entities if entity.type in types]

    def has(self, *types: EntityType) -> bool:
        return any(entity.type in types for entity in self.entities)


# --- Actions ---
_ACTION_TRANSITIONS = {
    ActionStatus.PENDING: {ActionStatus.IN_PROGRESS},
    ActionStatus.IN_PROGRESS: {ActionStatus.COMPLETED, ActionStatus.FAILED},
    ActionStatus.COMPLETED: set(),
    ActionStatus.FAILED: set(),
}


class ActionBase(BaseModel):
    """Fields shared by every planned action.

    Only ``status``, ``result`` and ``error`` change after creation, and only
    through :meth:`transition`.
    """

    id: str = Field(default_factory=_new_id)
    status: ActionStatus = ActionStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def transition(
        self,
        status: ActionStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if status not in _ACTION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Action {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if result is not None:
            self.result = result
        if error is not None:
            self.error = error


class CreateInvoice(ActionBase):
    type: Literal["create_invoice"] = "create_invoice"
    customer: Optional[str] = None
    customer_id: Optional[str] = None
    items: List[str] = Field(default_factory=list)
    selected_items: List[SelectedItem] = Field(default_factory=list)
    amount: Optional[float] = None

    @property
    def estimated_total(self) -> float:
        if self.selected_items:
            return sum(item.total for item in self.selected_items)
        if self.amount is None:
            return 0.0
        return self.amount * max(len(self.items), 1)


class CreateCustomer(ActionBase):
    type: Literal["create_customer"] = "create_customer"
    name: Optional[str] = None
    email: str = ""
    phone: Optional[str] = None
    address: Optional[str] = None


class CreateExpense(ActionBase):
    type: Literal["create_expense"] = "create_expense"
    amount: Optional[float] = None
    description: Optional[str] = None
    category: Optional[str] = None


class SearchCustomers(ActionBase):
    type: Literal["search_customers"] = "search_customers"
    query: Optional[str] = None


class GenerateFinancialReport(ActionBase):
    type: Literal["generate_financial_report"] = "generate_financial_report"
    period: Optional[str] = None
    report_type: str = "summary"


class NavigateToInvoice(ActionBase):
    type: Literal["navigate_to_invoice"] = "navigate_to_invoice"
    invoice_id: str
    invoice_number: Optional[str] = None
    edit_url: str


class FindInvoice(ActionBase):
    type: Literal["find_invoice"] = "find_invoice"
    query: Optional[str] = None


class SendInvoice(ActionBase):
    type: Literal["send_invoice"] = "send_invoice"
    invoice: Optional[str] = None


class DeleteInvoice(ActionBase):
    type: Literal["delete_invoice"] = "delete_invoice"
    invoice: Optional[str] = None


class DeleteCustomer(ActionBase):
    type: Literal["delete_customer"] = "delete_customer"
    customer: Optional[str] = None


Action = Annotated[
    Union[
        CreateInvoice,
        CreateCustomer,
        CreateExpense,
        SearchCustomers,
        GenerateFinancialReport,
        NavigateToInvoice,
        FindInvoice,
        SendInvoice,
        DeleteInvoice,
        DeleteCustomer,
    ],
    Field(discriminator="type"),
]

CREATION_ACTIONS = ("create_invoice", "create_customer", "create_expense")


class ActionResult(BaseModel):
    """The structured outcome of executing one action. Never an exception."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    needs_info: Optional[str] = None
    suggestions: List[str] = Field(default_factory=list)


# --- Context ---
class RecentEntities(BaseModel):
    """Most-recently-seen records, newest first, unique by id."""

    customers: List[Customer] = Field(default_factory=list)
    invoices: List[Invoice] = Field(default_factory=list)
    expenses: List[Expense] = Field(default_factory=list)
    items: List[Item] = Field(default_factory=list)

    def remember(
        self,
        kind: Literal["customers", "invoices", "expenses", "items"],
        record: Union[Customer, Invoice, Expense, Item],
        limit: int = 10,
    ) -> None:
        current = getattr(self, kind)
        updated = [record] + [r for r in current if r.id != record.id]
        setattr(self, kind, updated[:limit])


class UserPreferences(BaseModel):
    default_template: str = "modern"
    currency: str = "USD"
    date_format: str = "MM/DD/YYYY"
    language: str = "en"


class BusinessContext(BaseModel):
    business_profile: Optional[BusinessProfile] = None
    recent_activity: List[str] = Field(default_factory=list)


class InvoiceTask(BaseModel):
    """Progress through the guided invoice-creation flow.

    The payload fields required by each step are validated so that a task can
    never sit in a step it could not have reached.
    """

    step: TaskStep = TaskStep.CUSTOMER_SEARCH
    search_term: Optional[str] = None
    customer_candidates: List[Customer] = Field(default_factory=list)
    selected_customer: Optional[Customer] = None
    available_items: List[Item] = Field(default_factory=list)
    selected_items: List[SelectedItem] = Field(default_factory=list)
    completed_invoice: Optional[Invoice] = None
    # Amount and items named up front, applied once the customer is known.
    requested_amount: Optional[float] = None
    requested_items: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_step_payload(self) -> "InvoiceTask":
        if self.step == TaskStep.CUSTOMER_DISAMBIGUATION and len(self.customer_candidates) < 2:
            raise ValueError("customer_disambiguation requires at least two candidates")
        if self.step == TaskStep.ITEM_SELECTION and self.selected_customer is None:
            raise ValueError("item_selection requires a selected customer")
        if self.step == TaskStep.INVOICE_CREATION and self.completed_invoice is None:
            raise ValueError("invoice_creation requires the completed invoice")
        return self

    @property
    def subtotal(self) -> float:
        return round(sum(item.total for item in self.selected_items), 2)


class ConversationContext(BaseModel):
    """State carried between turns of one conversation."""

    recent_entities: RecentEntities = Field(default_factory=RecentEntities)
    current_task: Optional[InvoiceTask] = None
    user_preferences: UserPreferences = Field(default_factory=UserPreferences)
    business_context: Optional[BusinessContext] = None

    @property
    def business_profile(self) -> Optional[BusinessProfile]:
        if self.business_context is None:
            return None
        return self.business_context.business_profile


# --- Messages and sessions ---
class MessageMetadata(BaseModel):
    intent: Optional[Intent] = None
    entities: List[ConversationEntity] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    confidence: Optional[float] = None
    suggested_actions: List[str] = Field(default_factory=list)
    data: Optional[Dict[str, Any]] = None


class ConversationMessage(BaseModel):
    """Represents a single message within a conversation. Immutable."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    session_id: Optional[str] = None
    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_now)
    metadata: Optional[MessageMetadata] = None


class ConversationSession(BaseModel):
    """Represents a complete conversation session."""

    id: str
    user_id: str
    title: Optional[str] = None
    messages: List[ConversationMessage] = Field(default_factory=list)
    context: ConversationContext = Field(default_factory=ConversationContext)
    status: SessionStatus = SessionStatus.ACTIVE
    pending_actions: Dict[str, Action] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def append(
        self,
        role: Role,
        content: str,
        metadata: Optional[MessageMetadata] = None,
    ) -> ConversationMessage:
        message = ConversationMessage(
            role=role, content=content, session_id=self.id, metadata=metadata
        )
        self.messages.append(message)
        self.updated_at = message.timestamp
        return message

    def history(self, limit: int) -> List[ConversationMessage]:
        if limit <= 0:
            return []
        return self.messages[-limit:]


class AssistantReply(BaseModel):
    """What the presentation layer receives after each turn."""

    session_id: Optional[str] = None
    message: ConversationMessage
    needs_confirmation: bool = False
    pending_actions: List[Action] = Field(default_factory=list)
    task_step: Optional[TaskStep] = None

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def suggested_actions(self) -> List[str]:
        if self.message.metadata is None:
            return []
        return self.message.metadata.suggested_actions
