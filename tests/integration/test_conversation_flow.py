"""Integration tests for complete conversations through the Assistant."""

import asyncio
import json
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from bizchat import Assistant, replies
from bizchat.auth import Anonymous
from bizchat.exceptions import BackendError
from bizchat.llm import NoLLM
from bizchat.models import ASSISTANT_ROLE, USER_ROLE, ActionStatus, Intent, SessionStatus, TaskStep
from bizchat.records import Expense

pytestmark = pytest.mark.integration

USER_ID = "owner"
TODAY = date(2024, 3, 15)


async def converse(assistant, *messages):
    """Send messages in one session and return every reply."""
    results = []
    session_id = None
    for text in messages:
        reply = await assistant.handle_message(text, session_id)
        session_id = reply.session_id
        results.append(reply)
    return results


class TestGuidedInvoice:
    @pytest.mark.asyncio
    async def test_single_customer_to_finished_invoice(self, assistant, backend):
        start, first, second, finish, after = await converse(
            assistant,
            "Create an invoice for James",
            "1",
            "3",
            "create invoice",
            "thanks",
        )

        assert start.task_step == TaskStep.ITEM_SELECTION
        assert "1. Consulting - $150.00/hour" in start.content
        assert not start.needs_confirmation

        assert "Consulting" in first.content
        assert "$1,350.00" in second.content

        assert finish.task_step == TaskStep.INVOICE_CREATION
        assert not finish.needs_confirmation
        assert "INV-2024-005" in finish.content
        assert "$1,485.00" in finish.content
        metadata = finish.message.metadata
        assert metadata.data["invoice_number"] == "INV-2024-005"
        assert [a.type for a in metadata.actions] == ["create_invoice", "navigate_to_invoice"]
        assert all(a.status == ActionStatus.COMPLETED for a in metadata.actions)

        (invoice,) = await backend.find_invoices(USER_ID, "INV-2024-005")
        assert (invoice.subtotal, invoice.tax_amount, invoice.total) == (1350.0, 135.0, 1485.0)

        assert after.task_step is None
        assert assistant.get_session(after.session_id).context.current_task is None

    @pytest.mark.asyncio
    async def test_disambiguation(self, assistant):
        start, unclear, chosen = await converse(
            assistant, "Create an invoice for Smith", "Bob", "2"
        )

        assert start.task_step == TaskStep.CUSTOMER_DISAMBIGUATION
        assert "1. Anna Smith" in start.content
        assert unclear.task_step == TaskStep.CUSTOMER_DISAMBIGUATION
        task = assistant.get_session(unclear.session_id).context.current_task
        assert task is not None
        assert chosen.task_step == TaskStep.ITEM_SELECTION
        assert "Bob Smith" in chosen.content

    @pytest.mark.asyncio
    async def test_unknown_customer_can_be_created(self, assistant, backend):
        (start,) = await converse(assistant, "Create an invoice for Zed")
        assert start.needs_confirmation
        (pending,) = start.pending_actions
        assert pending.type == "create_customer"

        confirmed = await assistant.confirm_action(start.session_id, pending.id)
        assert "Zed" in confirmed.content
        assert [c.name for c in await backend.search_customers(USER_ID, "Zed")] == ["Zed"]

        reply = await assistant.handle_message("Zed", start.session_id)
        assert reply.task_step == TaskStep.ITEM_SELECTION

    @pytest.mark.asyncio
    async def test_cancel_midway(self, assistant):
        *_, cancelled = await converse(assistant, "Create an invoice for James", "1", "cancel")
        assert cancelled.task_step is None
        assert "cancelled" in cancelled.content

    @pytest.mark.asyncio
    async def test_failed_line_items_keep_selection(self, assistant, backend):
        start, _ = await converse(assistant, "Create an invoice for James", "2")
        with patch.object(
            backend, "insert_line_items", AsyncMock(side_effect=BackendError("disk full"))
        ):
            reply = await assistant.handle_message("create invoice", start.session_id)

        assert "Your selections are kept." in reply.content
        assert reply.task_step == TaskStep.ITEM_SELECTION
        assert await backend.find_invoices(USER_ID, "INV-2024-005") == []

    @pytest.mark.asyncio
    async def test_complete_request_runs_without_flow(self, assistant, backend):
        (reply,) = await converse(assistant, "Bill James $300")
        assert reply.task_step is None
        assert "INV-2024-005" in reply.content
        assert "$330.00" in reply.content

    @pytest.mark.asyncio
    async def test_amount_is_kept_through_disambiguation(self, assistant, backend):
        start, chosen = await converse(assistant, "Bill Smith $300", "2")
        assert start.task_step == TaskStep.CUSTOMER_DISAMBIGUATION
        assert chosen.task_step is None
        assert "INV-2024-005" in chosen.content
        assert "$330.00" in chosen.content
        (invoice,) = await backend.find_invoices(USER_ID, "INV-2024-005")
        assert invoice.customer_name == "Bob Smith"


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_large_expense_waits_for_approval(self, assistant, backend):
        (reply,) = await converse(assistant, "I spent $1500 on new laptops")

        assert reply.needs_confirmation
        assert reply.content.startswith("Just to confirm")
        assert await backend.list_expenses(USER_ID) == []

        (pending,) = reply.pending_actions
        confirmed = await assistant.confirm_action(reply.session_id, pending.id)
        assert "$1,500.00" in confirmed.content
        assert not confirmed.needs_confirmation

        again = await assistant.confirm_action(reply.session_id, pending.id)
        assert again is None
        assert len(await backend.list_expenses(USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_prompt_uses_business_currency(self, assistant, backend):
        backend.add_expense(
            USER_ID,
            Expense(description="Rent", amount=800.0, expense_date=TODAY, currency="NZD"),
        )
        (reply,) = await converse(assistant, "I spent $1500 on new laptops")
        assert reply.needs_confirmation
        assert "NZD 1,500.00" in reply.content
        assert "$1,500.00" not in reply.content

    @pytest.mark.asyncio
    async def test_lost_connection_on_confirm_is_reported(self, assistant, backend):
        (reply,) = await converse(assistant, "I spent $1500 on a new laptop")
        (pending,) = reply.pending_actions

        with patch.object(
            backend, "insert_expense", AsyncMock(side_effect=ConnectionError("connection reset"))
        ):
            confirmed = await assistant.confirm_action(reply.session_id, pending.id)

        assert confirmed.suggested_actions == ["Try again"]
        assert await backend.list_expenses(USER_ID) == []
        saved = assistant.get_session(reply.session_id)
        assert saved.messages[-1].content == confirmed.content
        assert pending.id not in saved.pending_actions

    @pytest.mark.asyncio
    async def test_small_expense_runs_immediately(self, assistant, backend):
        (reply,) = await converse(assistant, "I spent $50 on coffee")
        assert not reply.needs_confirmation
        (expense,) = await backend.list_expenses(USER_ID)
        assert (expense.amount, expense.description) == (50.0, "coffee")

    @pytest.mark.asyncio
    async def test_rejection(self, assistant, backend):
        (reply,) = await converse(assistant, "I spent $2000 on a new camera")
        (pending,) = reply.pending_actions

        rejected = await assistant.reject_action(reply.session_id, pending.id)
        assert rejected.content == replies.REJECTED
        assert await assistant.confirm_action(reply.session_id, pending.id) is None
        assert await backend.list_expenses(USER_ID) == []

    @pytest.mark.asyncio
    async def test_sending_needs_approval(self, assistant, february_records):
        (reply,) = await converse(assistant, "Send invoice INV-2024-004")
        assert reply.needs_confirmation

        confirmed = await assistant.confirm_action(reply.session_id, reply.pending_actions[0].id)
        assert "marked as sent" in confirmed.content
        assert confirmed.message.metadata.intent == Intent.SEND_INVOICE
        (invoice,) = await february_records.find_invoices(USER_ID, "INV-2024-004")
        assert invoice.status == "sent"


class TestReports:
    @pytest.mark.asyncio
    async def test_last_month_report(self, assistant, february_records):
        (reply,) = await converse(assistant, "Show me a report for last month")

        assert not reply.needs_confirmation
        assert "2024-02-01 - 2024-02-29" in reply.content
        assert "Revenue: $500.00" in reply.content
        assert "(70.0% margin)" in reply.content
        metrics = reply.message.metadata.data["metrics"]
        assert metrics["outstanding_invoices"] == 300.0

    @pytest.mark.asyncio
    async def test_missing_period_is_asked_for(self, assistant):
        (reply,) = await converse(assistant, "Generate a report")
        assert reply.content.startswith("I'd be happy to help you with that!")
        assert "period" in reply.content


class TestLanguageModel:
    """Analysis from a language model, with the rules as fallback."""

    @pytest.mark.asyncio
    async def test_model_analysis_is_used(self, scripted_assistant, february_records):
        answer = json.dumps(
            {
                "intent": "generate_report",
                "entities": [{"type": "date", "value": "last month", "confidence": 0.9}],
                "confidence": 0.9,
            }
        )
        assistant = scripted_assistant([answer])
        reply = await assistant.handle_message("How did February go?")
        assert reply.message.metadata.intent == Intent.GENERATE_REPORT
        assert "Revenue: $500.00" in reply.content

    @pytest.mark.asyncio
    async def test_malformed_answer_is_unknown(self, scripted_assistant):
        assistant = scripted_assistant(["I think they want an invoice"])
        reply = await assistant.handle_message("Create an invoice for James")
        assert reply.message.metadata.intent == Intent.UNKNOWN
        assert reply.content == replies.UNKNOWN

    @pytest.mark.asyncio
    async def test_unavailable_model_falls_back_to_rules(self, scripted_assistant):
        assistant = scripted_assistant([])
        reply = await assistant.handle_message("Create an invoice for James")
        assert reply.task_step == TaskStep.ITEM_SELECTION


class TestSessions:
    @pytest.mark.asyncio
    async def test_not_signed_in(self, backend, settings):
        assistant = Assistant(llm=NoLLM(), backend=backend, auth=Anonymous(), settings=settings)
        reply = await assistant.handle_message("I spent $50 on coffee")
        assert reply.content == replies.NOT_SIGNED_IN
        assert await backend.list_expenses(USER_ID) == []

    @pytest.mark.asyncio
    async def test_messages_in_one_session_are_serialized(self, assistant):
        session = await assistant.start_session()
        await asyncio.gather(
            assistant.handle_message("hello", session.id),
            assistant.handle_message("help", session.id),
        )
        saved = assistant.get_session(session.id)
        assert [m.role for m in saved.messages] == [
            ASSISTANT_ROLE,
            USER_ROLE,
            ASSISTANT_ROLE,
            USER_ROLE,
            ASSISTANT_ROLE,
        ]

    @pytest.mark.asyncio
    async def test_lifecycle(self, assistant):
        first = await assistant.start_session()
        second = await assistant.start_session()
        assert (first.id, second.id) == ("001", "002")

        await converse_in(assistant, first.id, "Create an invoice for James")
        assert assistant.list_sessions()[0] == first.id

        assert await assistant.end_session(first.id)
        ended = assistant.get_session(first.id)
        assert ended.status == SessionStatus.COMPLETED
        assert ended.context.current_task is None

        assert await assistant.delete_session(second.id)
        assert assistant.list_sessions() == [first.id]
        assert not await assistant.end_session("999")


async def converse_in(assistant, session_id, *messages):
    for text in messages:
        await assistant.handle_message(text, session_id)
