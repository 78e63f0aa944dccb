"""
Intent classification and entity extraction.

Two strategies implement the same ``Analyzer`` interface: ``LanguageModel``
asks the configured LLM for a JSON classification, ``RuleBased`` uses
deterministic pattern matching. ``WithFallback`` picks the first one when it
is available and substitutes the second when it is not or when it fails.
Whatever the path, ``analyze`` returns a valid ``Analysis``.
"""

import asyncio
import json
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .config import Settings, get_settings
from .exceptions import LLMUnavailableError
from .llm import LLM
from .models import (
    ASSISTANT_ROLE,
    SYSTEM_ROLE,
    USER_ROLE,
    Analysis,
    ConversationContext,
    ConversationEntity,
    ConversationMessage,
    EntityType,
    Intent,
)

logger = logging.getLogger(__name__)

INTENT_DESCRIPTIONS: Dict[Intent, str] = {
    Intent.CREATE_INVOICE: 'User wants to create a new invoice (phrases: "create invoice", "invoice for", "bill", "make invoice")',
    Intent.EDIT_INVOICE: "User wants to modify an existing invoice",
    Intent.SEND_INVOICE: "User wants to send an invoice to a customer",
    Intent.TRACK_PAYMENT: "User wants to check payment status",
    Intent.DELETE_INVOICE: "User wants to delete an invoice",
    Intent.CREATE_CUSTOMER: "User wants to add a new customer (only when explicitly asking to add/create customer)",
    Intent.FIND_CUSTOMER: "User wants to search for a customer",
    Intent.UPDATE_CUSTOMER: "User wants to modify customer information",
    Intent.DELETE_CUSTOMER: "User wants to delete a customer",
    Intent.ADD_EXPENSE: "User wants to record an expense",
    Intent.CATEGORIZE_EXPENSE: "User wants to categorize expenses",
    Intent.SCAN_RECEIPT: "User wants to scan a receipt",
    Intent.GENERATE_REPORT: "User wants to create a report",
    Intent.SHOW_ANALYTICS: "User wants to see analytics/charts",
    Intent.FINANCIAL_SUMMARY: "User wants a financial overview",
    Intent.HELP: "User needs assistance",
    Intent.CLARIFICATION: "User is asking for clarification",
    Intent.GREETING: "User is greeting or starting conversation",
    Intent.UNKNOWN: "Intent is unclear",
}

ENTITY_DESCRIPTIONS: Dict[EntityType, str] = {
    EntityType.CUSTOMER: "Customer names or identifiers (extract actual names, not action phrases)",
    EntityType.AMOUNT: "Monetary values",
    EntityType.DATE: "Dates or time periods",
    EntityType.PRODUCT: "Products",
    EntityType.SERVICE: "Services offered",
    EntityType.INVOICE: "Invoice numbers or references",
    EntityType.EXPENSE: "Expense descriptions",
    EntityType.CATEGORY: "Category names",
}

# --- Patterns shared by the fallback classifier and the invoice flow ---
_NAME = r"([A-Za-z][A-Za-z\s'.-]{1,29})"
_CUSTOMER_PATTERNS = [
    re.compile(r"(?:invoice|bill|create).*?\bfor\s+" + _NAME, re.IGNORECASE),
    re.compile(r"\b(?:bill|invoice)\s+" + _NAME, re.IGNORECASE),
    re.compile(r"\b(?:customer|client)\s+(?:named\s+|called\s+)?" + _NAME, re.IGNORECASE),
]
_BARE_NAME = re.compile(r"^\s*([A-Za-z][A-Za-z\s'.-]{1,29})\s*$")
_NAME_STOP = re.compile(
    r"\s+(?:for|with|of|at|on|and|to|about|from|worth|totaling|totalling)\b.*$",
    re.IGNORECASE,
)
_INVALID_NAMES = {
    "create an invoice",
    "create invoice",
    "an invoice",
    "invoice",
    "bill",
    "make invoice",
    "new invoice",
    "a new customer",
    "new customer",
    "customer",
    "me",
    "him",
    "her",
    "them",
    "it",
}
_AMOUNT = re.compile(r"(?<![\w-])\$?\s?(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?(?![\w-])")
_INVOICE_NUMBER = re.compile(
    r"\b([A-Z]{2,5}-\d[\w-]*|[A-Z]{2,5}-[A-Z0-9]+-\d+)\b|invoice\s*#\s*([\w-]+)",
    re.IGNORECASE,
)
_PERIODS = (
    "last quarter",
    "last month",
    "last year",
    "this quarter",
    "this month",
    "this year",
    "today",
    "quarter",
    "month",
    "year",
)
_GREETING = re.compile(r"^\s*(hi|hello|hey|good (morning|afternoon|evening))\b", re.IGNORECASE)
_EXPENSE_DESCRIPTION = re.compile(r"\b(?:for|on)\s+([A-Za-z][A-Za-z0-9\s'&.-]{1,60})$", re.IGNORECASE)


def clean_name(raw: Optional[str]) -> Optional[str]:
    """Trim a captured name at the first connector word and reject non-names."""
    if not raw:
        return None
    name = _NAME_STOP.sub("", raw).strip(" .,'-")
    name = re.sub(r"\s+", " ", name)
    if len(name) < 2 or name.lower() in _INVALID_NAMES:
        return None
    if any(invalid in name.lower() for invalid in ("invoice", "create ")):
        return None
    return name


def extract_customer_name(message: str, allow_bare: bool = False) -> Optional[str]:
    """Find the customer a message refers to, e.g. ``"invoice for James"``.

    With ``allow_bare`` a message consisting of nothing but a name is accepted,
    which is how users answer "Which customer is this for?".
    """
    for pattern in _CUSTOMER_PATTERNS:
        match = pattern.search(message)
        if match:
            name = clean_name(match.group(1))
            if name:
                return name
    if allow_bare:
        match = _BARE_NAME.match(message)
        if match:
            return clean_name(match.group(1))
    return None


def extract_amount(message: str) -> Optional[str]:
    for match in _AMOUNT.finditer(message):
        whole, cents = match.group(1), match.group(2)
        return whole + (f".{cents}" if cents else "")
    return None


def extract_invoice_reference(message: str) -> Optional[str]:
    match = _INVOICE_NUMBER.search(message)
    if not match:
        return None
    return (match.group(1) or match.group(2)).upper()


def extract_period(message: str) -> Optional[str]:
    lower = message.lower()
    for period in _PERIODS:
        if period in lower:
            return period
    return None


def parse_analysis(text: str) -> Analysis:
    """Parse a model's JSON classification. Malformed text yields ``unknown``."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", cleaned)
    try:
        raw = json.loads(cleaned)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Could not parse language model analysis: %.200s", text)
        return Analysis(intent=Intent.UNKNOWN, confidence=0.1, source="llm")
    raw_entities = raw.get("entities") if isinstance(raw, dict) else None
    if not isinstance(raw, dict) or not isinstance(raw_entities or [], list):
        logger.warning("Unexpected language model analysis shape: %.200s", text)
        return Analysis(intent=Intent.UNKNOWN, confidence=0.1, source="llm")

    try:
        intent = Intent(raw.get("intent") or Intent.UNKNOWN)
    except (TypeError, ValueError):
        intent = Intent.UNKNOWN

    try:
        return _build_analysis(raw, intent, raw_entities or [])
    except (TypeError, ValueError):
        logger.warning("Invalid language model analysis: %.200s", text)
        return Analysis(intent=Intent.UNKNOWN, confidence=0.1, source="llm")


def _build_analysis(raw: Dict[str, Any], intent: Intent, raw_entities: List[Any]) -> Analysis:
    entities: List[ConversationEntity] = []
    for item in raw_entities:
        if not isinstance(item, dict):
            continue
        try:
            entity_type = EntityType(item.get("type"))
        except (TypeError, ValueError):
            continue
        value = item.get("value")
        if value is None or str(value).strip() == "":
            continue
        entities.append(
            ConversationEntity(
                type=entity_type,
                value=str(value).strip(),
                confidence=_clamp(item.get("confidence"), 0.5),
            )
        )

    return Analysis(
        intent=intent,
        entities=entities,
        confidence=_clamp(raw.get("confidence"), 0.5),
        source="llm",
    )


def _clamp(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(max(number, 0.0), 1.0)


def build_analysis_prompt(context: ConversationContext) -> str:
    intents = "\n".join(f"- {i.value}: {d}" for i, d in INTENT_DESCRIPTIONS.items())
    entity_types = "\n".join(f"- {t.value}: {d}" for t, d in ENTITY_DESCRIPTIONS.items())
    profile = context.business_profile
    recent_customers = ", ".join(c.name for c in context.recent_entities.customers)
    return f"""You are a business assistant for a small-business invoicing application.

Your job is to analyze user messages and extract:
1. Intent - what the user wants to do
2. Entities - specific business data mentioned (customers, amounts, dates, etc.)
3. Confidence - how confident you are in your analysis (0-1)

IMPORTANT RULES:
- When user says "create invoice" or "invoice for [name]", the intent is ALWAYS "create_invoice"
- The customer entity should be the actual customer name, NOT the phrase "create an invoice"

Available intents:
{intents}

Entity types to extract:
{entity_types}

EXAMPLES:
"Create an invoice for James" -> intent: "create_invoice", entities: [{{"type": "customer", "value": "James", "confidence": 0.9}}]
"I need to bill Sarah Smith" -> intent: "create_invoice", entities: [{{"type": "customer", "value": "Sarah Smith", "confidence": 0.9}}]
"Create customer John Doe" -> intent: "create_customer", entities: [{{"type": "customer", "value": "John Doe", "confidence": 0.9}}]

Current business context:
Business: {profile.name if profile else 'Unknown'}
Recent customers: {recent_customers or 'None'}
Recent invoices: {len(context.recent_entities.invoices)} invoices
Currency: {context.user_preferences.currency}

Return only your analysis as JSON:
{{"intent": "intent_name", "entities": [{{"type": "entity_type", "value": "extracted_value", "confidence": 0.9}}], "confidence": 0.8}}"""


def build_history(
    history: Sequence[ConversationMessage], message: str, window: int
) -> List[Dict[str, str]]:
    recent = list(history)[-window:] if window > 0 else []
    messages = [
        {
            "role": USER_ROLE if m.role == USER_ROLE else ASSISTANT_ROLE,
            "content": m.content,
        }
        for m in recent
    ]
    messages.append({"role": USER_ROLE, "content": message})
    return messages


class Analyzer(ABC):
    """Interface for turning one message into an ``Analysis``."""

    @abstractmethod
    async def analyze(
        self,
        message: str,
        context: ConversationContext,
        history: Sequence[ConversationMessage] = (),
    ) -> Analysis:
        """Classify ``message`` given the conversation so far."""
        pass

    def is_available(self) -> bool:
        return True


class LanguageModel(Analyzer):
    """Primary analyzer backed by an LLM pillar.

    Raises ``LLMUnavailableError`` on transport failures and timeouts so the
    caller can substitute another strategy; malformed output is not an error.
    """

    def __init__(self, llm: LLM, settings: Optional[Settings] = None):
        self.llm = llm
        self.settings = settings or get_settings()

    def is_available(self) -> bool:
        return self.llm.is_available()

    async def analyze(self, message, context, history=()):
        messages = [{"role": SYSTEM_ROLE, "content": build_analysis_prompt(context)}]
        messages.extend(build_history(history, message, self.settings.history_window))

        try:
            response = await asyncio.wait_for(
                self.llm.generate_response(
                    messages,
                    model=self.settings.llm_model,
                    max_tokens=self.settings.llm_max_tokens,
                    temperature=self.settings.llm_temperature,
                ),
                timeout=self.settings.llm_timeout,
            )
            content = self.llm.extract_content(response)
        except LLMUnavailableError:
            raise
        except asyncio.TimeoutError as e:
            raise LLMUnavailableError(
                f"Language model did not answer within {self.settings.llm_timeout}s"
            ) from e
        except Exception as e:
            raise LLMUnavailableError(f"Language model call failed: {e}") from e

        if not content or not content.strip():
            raise LLMUnavailableError("Language model returned an empty response")
        return parse_analysis(content)


class RuleBased(Analyzer):
    """Deterministic keyword and pattern classifier. Never raises."""

    async def analyze(self, message, context, history=()):
        return self.classify(message or "")

    def classify(self, message: str) -> Analysis:
        lower = message.lower()

        def has(*words: str) -> bool:
            return any(re.search(rf"\b{w}\b", lower) for w in words)

        if _GREETING.match(message) and len(lower.split()) <= 4:
            return Analysis(intent=Intent.GREETING, confidence=0.9)

        if has("delete", "remove"):
            if has("invoice"):
                return self._result(
                    Intent.DELETE_INVOICE,
                    invoice=extract_invoice_reference(message),
                )
            if has("customer", "client"):
                return self._result(
                    Intent.DELETE_CUSTOMER,
                    customer=extract_customer_name(message),
                )

        if has("send", "email") and has("invoice"):
            return self._result(Intent.SEND_INVOICE, invoice=extract_invoice_reference(message))

        if (has("create", "make", "new") and has("invoice")) or has("bill") or "invoice for" in lower:
            return self._result(
                Intent.CREATE_INVOICE,
                customer=extract_customer_name(message),
                amount=extract_amount(message),
            )

        if has("create", "add", "new") and has("customer", "client"):
            match = _CUSTOMER_PATTERNS[2].search(message)
            return self._result(
                Intent.CREATE_CUSTOMER,
                customer=clean_name(match.group(1)) if match else None,
            )

        if has("find", "search", "lookup", "look up", "show") and has("customer", "client", "customers", "clients"):
            match = _CUSTOMER_PATTERNS[2].search(message)
            name = clean_name(match.group(1)) if match else None
            if name is None:
                found = re.search(r"\b(?:find|search for|look up|lookup)\s+" + _NAME, message, re.IGNORECASE)
                name = clean_name(found.group(1)) if found else None
            return self._result(Intent.FIND_CUSTOMER, customer=name)

        if has("track", "status", "paid") and has("invoice"):
            return self._result(Intent.TRACK_PAYMENT, invoice=extract_invoice_reference(message))

        if has("expense", "expenses", "spent", "spend"):
            description = _EXPENSE_DESCRIPTION.search(message)
            return self._result(
                Intent.ADD_EXPENSE,
                amount=extract_amount(message),
                expense=description.group(1).strip() if description else None,
            )

        if has("report", "summary", "profit", "revenue", "analytics"):
            intent = Intent.GENERATE_REPORT
            if has("summary", "overview"):
                intent = Intent.FINANCIAL_SUMMARY
            elif has("analytics", "chart", "charts"):
                intent = Intent.SHOW_ANALYTICS
            return self._result(intent, date=extract_period(message))

        if has("help") or "what can you do" in lower:
            return Analysis(intent=Intent.HELP, confidence=0.8)

        return Analysis(intent=Intent.UNKNOWN, confidence=0.3)

    @staticmethod
    def _result(intent: Intent, **values: Optional[str]) -> Analysis:
        entities = [
            ConversationEntity(type=EntityType(kind), value=value, confidence=0.8)
            for kind, value in values.items()
            if value
        ]
        return Analysis(intent=intent, entities=entities, confidence=0.7)


class WithFallback(Analyzer):
    """Two-stage strategy: ``primary`` when available, else ``fallback``."""

    def __init__(self, primary: Analyzer, fallback: Optional[Analyzer] = None):
        self.primary = primary
        self.fallback = fallback or RuleBased()

    async def analyze(self, message, context, history=()):
        if self.primary.is_available():
            try:
                return await self.primary.analyze(message, context, history)
            except LLMUnavailableError as e:
                logger.warning("Primary analyzer unavailable, using fallback: %s", e)
        else:
            logger.debug("Primary analyzer not configured, using fallback")
        return await self.fallback.analyze(message, context, history)
