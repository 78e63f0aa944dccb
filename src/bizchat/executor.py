"""
Executes planned actions against the business-data backend.

``Executor.execute`` never raises: every outcome, including backend failures
and missing information, comes back as an ``ActionResult`` with suggestions
the user can act on. Invoice creation writes the header and then the line
items; when the second write fails the header is deleted again so that no
invoice is left without its items.
"""

import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .auth import Auth
from .backend import Backend
from .config import Settings, get_settings
from .exceptions import BackendError
from .models import Action, ActionResult, ActionStatus, ConversationContext, CreateInvoice
from .records import BusinessProfile, Customer, Expense, Invoice, LineItem

logger = logging.getLogger(__name__)

# Action types that do not touch the backend and so need no signed-in user.
SIGNAL_ACTIONS = {"navigate_to_invoice"}


def format_invoice_number(fmt: str, sequence: int, on: date) -> str:
    """Render an invoice number format such as ``INV-{YYYY}-{###}``.

    Parameters
    ----------
    fmt : str
        Format string. Supported tokens are ``{YYYY}``, ``{YY}``, ``{MM}``,
        ``{DD}``, ``{###}``, ``{##}``, ``{#}`` and ``{SEQ}``.
    sequence : int
        The sequence number of the invoice being created.
    on : date
        Issue date used for the date tokens.

    Returns
    -------
    str
        The invoice number, e.g. ``INV-2024-005``.
    """
    tokens = {
        "{YYYY}": f"{on.year:04d}",
        "{YY}": f"{on.year % 100:02d}",
        "{MM}": f"{on.month:02d}",
        "{DD}": f"{on.day:02d}",
        "{###}": f"{sequence:03d}",
        "{##}": f"{sequence:02d}",
        "{#}": str(sequence),
        "{SEQ}": f"{sequence:03d}",
    }
    number = fmt
    for token, value in tokens.items():
        number = number.replace(token, value)
    return number


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _month_start(today: date, delta: int = 0) -> date:
    year, month = _shift_month(today.year, today.month, delta)
    return date(year, month, 1)


def resolve_period(
    period: Optional[str], today: date, fiscal_year_start_month: int = 1
) -> Tuple[date, date]:
    """Turn a named period into an inclusive ``(start, end)`` date range.

    Open periods (``this month``, ``quarter``, ``year``) end today; closed
    periods (``last month``, ``last quarter``, ``last year``) end on their
    last day. Quarters and years start at ``fiscal_year_start_month``.
    Anything unrecognized means the current month.
    """
    name = (period or "").strip().lower()

    into_year = (today.month - fiscal_year_start_month) % 12
    year_start = _month_start(today, -into_year)
    quarter_start = _month_start(today, -(into_year % 3))

    if name == "today":
        return today, today
    if name == "last month":
        start = _month_start(today, -1)
        return start, _month_start(today) - timedelta(days=1)
    if name in ("quarter", "this quarter"):
        return quarter_start, today
    if name == "last quarter":
        start = _month_start(quarter_start, -3)
        return start, quarter_start - timedelta(days=1)
    if name in ("year", "this year"):
        return year_start, today
    if name == "last year":
        start = _month_start(year_start, -12)
        return start, year_start - timedelta(days=1)
    return _month_start(today), today


def _failure(error: str, *suggestions: str) -> ActionResult:
    return ActionResult(success=False, error=error, suggestions=list(suggestions))


def _needs(field: str, *suggestions: str) -> ActionResult:
    return ActionResult(success=False, needs_info=field, suggestions=list(suggestions))


class Executor:
    """Runs actions for the signed-in user.

    Parameters
    ----------
    backend : Backend
        Where business records are read and written.
    auth : Auth
        Supplies the current user. Every path except navigation requires one.
    settings : Settings, optional
        Limits and defaults. Defaults to ``get_settings()``.
    today : callable, optional
        Returns the current date. Injected so reports and numbering are
        reproducible in tests.
    """

    HANDLERS: Dict[str, str] = {
        "create_invoice": "_create_invoice",
        "create_customer": "_create_customer",
        "create_expense": "_create_expense",
        "search_customers": "_search_customers",
        "generate_financial_report": "_generate_financial_report",
        "navigate_to_invoice": "_navigate_to_invoice",
        "find_invoice": "_find_invoice",
        "send_invoice": "_send_invoice",
        "delete_invoice": "_delete_invoice",
        "delete_customer": "_delete_customer",
    }

    def __init__(
        self,
        backend: Backend,
        auth: Auth,
        settings: Optional[Settings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.backend = backend
        self.auth = auth
        self.settings = settings or get_settings()
        self.today = today or date.today

    async def execute(
        self, action: Action, context: ConversationContext, session_id: str
    ) -> ActionResult:
        """Execute one action, recording its outcome on the action itself."""
        if action.status != ActionStatus.PENDING:
            return _failure(f"This action is already {action.status.value}.")

        user_id = self.auth.get_current_user_id()
        if not user_id and action.type not in SIGNAL_ACTIONS:
            logger.warning("Refusing %s for session %s: not authenticated", action.type, session_id)
            return _failure(
                "You need to be signed in to do that.",
                "Sign in again",
            )

        action.transition(ActionStatus.IN_PROGRESS)
        logger.info("Executing %s (%s) for session %s", action.type, action.id, session_id)
        handler = getattr(self, self.HANDLERS[action.type])
        try:
            result = await handler(action, context, user_id)
        except BackendError as e:
            logger.error("Backend failure during %s", action.type, exc_info=True)
            result = _failure(f"Something went wrong: {e}", "Try again")
        except Exception:
            logger.exception("Unexpected failure during %s", action.type)
            result = _failure("Something went wrong while doing that.", "Try again")

        if result.success:
            action.transition(ActionStatus.COMPLETED, result=result.data)
        else:
            action.transition(
                ActionStatus.FAILED,
                result=result.data,
                error=result.error or f"needs {result.needs_info}",
            )
        logger.debug("%s finished with success=%s", action.type, result.success)
        return result

    # --- Invoices ---
    async def _resolve_customer(
        self, action: CreateInvoice, context: ConversationContext, user_id: str
    ) -> Optional[Customer]:
        if action.customer_id:
            for customer in context.recent_entities.customers:
                if customer.id == action.customer_id:
                    return customer
            return await self.backend.get_customer(user_id, action.customer_id)
        if not action.customer:
            return None
        needle = action.customer.lower()
        for customer in context.recent_entities.customers:
            if needle in customer.name.lower():
                return customer
        matches = await self.backend.search_customers(user_id, action.customer, limit=1)
        return matches[0] if matches else None

    async def _build_lines(
        self,
        action: CreateInvoice,
        context: ConversationContext,
        user_id: str,
        default_tax: float,
    ) -> List[Dict[str, Any]]:
        lines = []
        if action.selected_items:
            for item in action.selected_items:
                lines.append(
                    {
                        "description": item.name,
                        "quantity": item.quantity,
                        "unit": item.unit,
                        "rate": item.rate,
                        "tax": item.tax_rate if item.tax_rate is not None else default_tax,
                        "total": item.total,
                    }
                )
            return lines

        for name in action.items:
            needle = name.lower()
            match = next(
                (i for i in context.recent_entities.items if needle in i.name.lower()), None
            )
            if match is None:
                found = await self.backend.list_items(user_id, query=name, limit=1)
                match = found[0] if found else None
            if match is not None:
                lines.append(
                    {
                        "description": match.name,
                        "quantity": 1,
                        "unit": match.unit,
                        "rate": match.sale_price,
                        "tax": match.tax_rate if match.tax_rate is not None else default_tax,
                        "total": round(match.sale_price, 2),
                    }
                )
            else:
                rate = action.amount or 0.0
                lines.append(
                    {
                        "description": name,
                        "quantity": 1,
                        "unit": "unit",
                        "rate": rate,
                        "tax": default_tax,
                        "total": round(rate, 2),
                    }
                )

        if not lines and action.amount is not None:
            lines.append(
                {
                    "description": "Service",
                    "quantity": 1,
                    "unit": "unit",
                    "rate": action.amount,
                    "tax": default_tax,
                    "total": round(action.amount, 2),
                }
            )
        return lines

    async def _next_sequence(
        self, user_id: str, profile: Optional[BusinessProfile], fmt: str, today: date
    ) -> int:
        """The profile's counter, or the first free number when there is no profile."""
        if profile is not None:
            return profile.invoice_number_sequence + 1
        taken = {invoice.invoice_number for invoice in await self.backend.list_invoices(user_id)}
        sequence = len(taken) + 1
        for _ in range(len(taken)):
            if format_invoice_number(fmt, sequence, today) not in taken:
                break
            sequence += 1
        return sequence

    async def _create_invoice(self, action, context, user_id):
        customer = await self._resolve_customer(action, context, user_id)
        if customer is None:
            if action.customer or action.customer_id:
                name = action.customer or action.customer_id
                return _needs(
                    "customer_not_found",
                    f'Create customer "{name}"',
                    "Search for a different customer",
                    "Provide customer email or phone",
                )
            return _needs("customer", "Specify customer name", "Choose from recent customers")

        profile = await self.backend.get_business_profile(user_id)
        default_tax = self.settings.default_tax_rate
        if profile is not None and profile.default_tax_rate is not None:
            default_tax = profile.default_tax_rate

        lines = await self._build_lines(action, context, user_id, default_tax)
        if not lines:
            return _needs("items", "Specify products or services", "Provide amount for service")

        subtotal = round(sum(line["total"] for line in lines), 2)
        tax_amount = round(sum(line["total"] * line["tax"] / 100 for line in lines), 2)
        total = round(subtotal + tax_amount, 2)

        today = self.today()
        fmt = (profile.invoice_number_format if profile else None) or (
            self.settings.default_invoice_number_format
        )
        sequence = await self._next_sequence(user_id, profile, fmt, today)
        invoice = Invoice(
            invoice_number=format_invoice_number(fmt, sequence, today),
            customer_id=customer.id,
            customer_name=customer.name,
            issue_date=today,
            due_date=today + timedelta(days=self.settings.invoice_due_days),
            subtotal=subtotal,
            tax_amount=tax_amount,
            total=total,
            status="draft",
            currency=context.user_preferences.currency,
            template_name=context.user_preferences.default_template,
            user_id=user_id,
        )

        try:
            saved = await self.backend.insert_invoice(user_id, invoice)
        except BackendError as e:
            logger.error("Failed to insert invoice %s", invoice.invoice_number, exc_info=True)
            return _failure(f"Failed to create invoice: {e}", "Try again", "Check customer details")

        try:
            await self.backend.insert_line_items(
                user_id, [LineItem(invoice_id=saved.id, **line) for line in lines]
            )
        except Exception as e:
            logger.error(
                "Line items for invoice %s failed, rolling back", saved.invoice_number, exc_info=True
            )
            try:
                await self.backend.delete_invoice(user_id, saved.id)
            except Exception:
                logger.critical(
                    "Rollback of invoice %s failed; header left without items",
                    saved.invoice_number,
                    exc_info=True,
                )
            return _failure(
                f"Failed to create invoice items: {e}", "Try again", "Simplify the items"
            )

        if profile is not None:
            try:
                await self.backend.set_invoice_sequence(user_id, sequence)
            except BackendError:
                logger.warning("Could not store invoice sequence %d", sequence, exc_info=True)

        context.recent_entities.remember("customers", customer, self.settings.recent_entity_limit)
        context.recent_entities.remember("invoices", saved, self.settings.recent_entity_limit)
        return ActionResult(
            success=True,
            data={
                "type": "invoice",
                "invoice_id": saved.id,
                "invoice_number": saved.invoice_number,
                "customer_name": customer.name,
                "total": total,
                "currency": saved.currency,
                "status": saved.status,
                "due_date": saved.due_date.isoformat(),
                "line_count": len(lines),
            },
            suggestions=[
                "Send this invoice via email",
                "Preview the invoice",
                "Create another invoice",
                "View invoice details",
            ],
        )

    async def _find_invoice(self, action, context, user_id):
        if not action.query:
            invoices = await self.backend.list_invoices(user_id, limit=self.settings.search_display_limit)
        else:
            invoices = await self.backend.find_invoices(
                user_id, action.query, limit=self.settings.customer_search_limit
            )
        for invoice in reversed(invoices[: self.settings.recent_invoices]):
            context.recent_entities.remember("invoices", invoice, self.settings.recent_entity_limit)
        return ActionResult(
            success=True,
            data={
                "type": "invoices",
                "invoices": [i.model_dump(mode="json") for i in invoices],
                "count": len(invoices),
            },
            suggestions=["Send a reminder", "View invoice details"],
        )

    async def _lookup_invoice(self, reference: Optional[str], context, user_id) -> Optional[Invoice]:
        if not reference:
            return None
        needle = reference.lower()
        for invoice in context.recent_entities.invoices:
            if invoice.id == reference or invoice.invoice_number.lower() == needle:
                return invoice
        matches = await self.backend.find_invoices(user_id, reference, limit=2)
        exact = [i for i in matches if i.invoice_number.lower() == needle or i.id == reference]
        if exact:
            return exact[0]
        return matches[0] if len(matches) == 1 else None

    async def _send_invoice(self, action, context, user_id):
        invoice = await self._lookup_invoice(action.invoice, context, user_id)
        if invoice is None:
            return _needs("invoice", "Give the invoice number", "Find an invoice")
        updated = await self.backend.update_invoice_status(user_id, invoice.id, "sent")
        context.recent_entities.remember("invoices", updated, self.settings.recent_entity_limit)
        return ActionResult(
            success=True,
            data={"type": "email_sent", "invoice_number": updated.invoice_number},
            suggestions=["Track invoice status", "Set payment reminder"],
        )

    async def _delete_invoice(self, action, context, user_id):
        invoice = await self._lookup_invoice(action.invoice, context, user_id)
        if invoice is None:
            return _needs("invoice", "Give the invoice number", "Find an invoice")
        await self.backend.delete_invoice(user_id, invoice.id)
        context.recent_entities.invoices = [
            i for i in context.recent_entities.invoices if i.id != invoice.id
        ]
        return ActionResult(
            success=True,
            data={"type": "invoice_deleted", "invoice_number": invoice.invoice_number},
            suggestions=["Create a new invoice", "View recent invoices"],
        )

    async def _navigate_to_invoice(self, action, context, user_id):
        return ActionResult(
            success=True,
            data={
                "type": "navigation",
                "invoice_id": action.invoice_id,
                "invoice_number": action.invoice_number,
                "edit_url": action.edit_url,
                "action": "navigate",
            },
            suggestions=["Edit invoice details", "Send invoice", "Create another invoice"],
        )

    # --- Customers ---
    async def _create_customer(self, action, context, user_id):
        if not action.name or not action.name.strip():
            return _needs("customer_name", "Provide customer name", "Include contact information")

        profile = context.business_profile
        customer = Customer(
            name=action.name.strip(),
            email=action.email or "",
            phone=action.phone,
            address=action.address,
            country=profile.country if profile else "US",
            user_id=user_id,
        )
        try:
            saved = await self.backend.insert_customer(user_id, customer)
        except BackendError as e:
            logger.error("Failed to create customer %r", customer.name, exc_info=True)
            return _failure(
                f"Failed to create customer: {e}", "Try again", "Check if customer already exists"
            )
        context.recent_entities.remember("customers", saved, self.settings.recent_entity_limit)
        return ActionResult(
            success=True,
            data={
                "type": "customer",
                "id": saved.id,
                "name": saved.name,
                "email": saved.email,
                "phone": saved.phone,
                "is_vip": saved.is_vip,
            },
            suggestions=[
                "Create invoice for this customer",
                "Add more customer details",
                "Mark as VIP customer",
            ],
        )

    async def _search_customers(self, action, context, user_id):
        if not action.query:
            return _needs("search_query", "Provide customer name or email", "Search by phone number")

        needle = action.query.lower()
        matches = [
            c
            for c in context.recent_entities.customers
            if needle in c.name.lower()
            or needle in c.email.lower()
            or (c.phone and needle in c.phone)
        ]
        try:
            found = await self.backend.search_customers(
                user_id, action.query, limit=self.settings.customer_search_limit
            )
        except BackendError as e:
            return _failure(
                f"Search failed: {e}", "Try a different search term", "Create a new customer"
            )
        seen = {c.id for c in matches}
        matches.extend(c for c in found if c.id not in seen)

        if not matches:
            return _needs(
                "customer_not_found",
                f'Create customer "{action.query}"',
                "Try a different search term",
                "Search by email instead",
            )

        shown = matches[: self.settings.search_display_limit]
        return ActionResult(
            success=True,
            data={
                "type": "customers",
                "customers": [c.model_dump(mode="json") for c in shown],
                "count": len(matches),
            },
            suggestions=[
                "Create invoice for customer",
                "View customer details",
                "Edit customer information",
            ],
        )

    async def _delete_customer(self, action, context, user_id):
        if not action.customer:
            return _needs("customer_name", "Provide customer name")
        matches = await self.backend.search_customers(
            user_id, action.customer, limit=self.settings.customer_search_limit
        )
        exact = [c for c in matches if c.name.lower() == action.customer.lower()]
        if len(exact) == 1:
            customer = exact[0]
        elif len(matches) == 1:
            customer = matches[0]
        elif not matches:
            return _needs("customer_not_found", "Try a different search term")
        else:
            return _needs(
                "customer_selection",
                *[f'Delete customer "{c.name}"' for c in matches[: self.settings.search_display_limit]],
            )
        await self.backend.delete_customer(user_id, customer.id)
        context.recent_entities.customers = [
            c for c in context.recent_entities.customers if c.id != customer.id
        ]
        return ActionResult(
            success=True,
            data={"type": "customer_deleted", "name": customer.name},
            suggestions=["View customers", "Create a new customer"],
        )

    # --- Expenses ---
    async def _create_expense(self, action, context, user_id):
        if action.amount is None or not action.description:
            return _needs(
                "amount" if action.amount is None else "description",
                "Provide expense amount",
                "Add expense description",
            )
        if action.amount <= 0:
            return _failure(
                "Invalid amount format", "Use format like $100 or 100.50", "Enter numeric amount"
            )

        expense = Expense(
            description=action.description,
            amount=round(action.amount, 2),
            expense_date=self.today(),
            category=action.category,
            status="pending",
            is_billable=False,
            tax_amount=0.0,
            currency=context.user_preferences.currency,
            user_id=user_id,
        )
        try:
            saved = await self.backend.insert_expense(user_id, expense)
        except BackendError as e:
            logger.error("Failed to create expense", exc_info=True)
            return _failure(f"Failed to create expense: {e}", "Try again", "Simplify the description")
        context.recent_entities.remember("expenses", saved, self.settings.recent_entity_limit)
        return ActionResult(
            success=True,
            data={
                "type": "expense",
                "amount": saved.amount,
                "description": saved.description,
                "currency": saved.currency,
                "date": saved.expense_date.isoformat(),
            },
            suggestions=[
                "Upload receipt for this expense",
                "Categorize this expense",
                "Make this expense billable",
            ],
        )

    # --- Reports ---
    async def _generate_financial_report(self, action, context, user_id):
        start, end = resolve_period(
            action.period, self.today(), self.settings.fiscal_year_start_month
        )
        try:
            invoices = await self.backend.list_invoices(user_id, start=start, end=end)
            expenses = await self.backend.list_expenses(user_id, start=start, end=end)
        except BackendError as e:
            return _failure(
                f"Failed to generate report: {e}", "Try again", "Specify different time period"
            )

        revenue = round(sum(i.total for i in invoices if i.status == "paid"), 2)
        spent = round(sum(e.amount for e in expenses), 2)
        profit = round(revenue - spent, 2)
        margin = round(profit / revenue * 100, 2) if revenue > 0 else 0.0
        outstanding = round(
            sum(i.total for i in invoices if i.status in ("sent", "overdue")), 2
        )
        return ActionResult(
            success=True,
            data={
                "type": "financial_report",
                "report_type": action.report_type,
                "period": f"{start.isoformat()} - {end.isoformat()}",
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "metrics": {
                    "total_revenue": revenue,
                    "total_expenses": spent,
                    "profit": profit,
                    "profit_margin": margin,
                    "outstanding_invoices": outstanding,
                    "invoice_count": len(invoices),
                    "expense_count": len(expenses),
                },
                "currency": context.user_preferences.currency,
            },
            suggestions=[
                "Export report to PDF",
                "View detailed breakdown",
                "Compare with previous period",
                "Generate charts",
            ],
        )
