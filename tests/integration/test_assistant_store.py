"""Integration tests for Assistant + Store: conversations survive restarts."""

from datetime import date

import pytest
from bizchat import Assistant
from bizchat.llm import NoLLM
from bizchat.models import TaskStep

pytestmark = pytest.mark.integration

USER_ID = "owner"
TODAY = date(2024, 3, 15)


@pytest.fixture(params=["InMemory", "File", "SQLite"])
def store(request, all_store_implementations):
    return dict(all_store_implementations)[request.param]


def restart(store, backend, settings):
    """A fresh Assistant over the same store and backend."""
    return Assistant(
        llm=NoLLM(), store=store, backend=backend, settings=settings, today=lambda: TODAY
    )


class TestAssistantStore:
    @pytest.mark.asyncio
    async def test_task_resumes_after_restart(self, store, backend, settings):
        first = restart(store, backend, settings)
        reply = await first.handle_message("Create an invoice for Smith")
        assert reply.task_step == TaskStep.CUSTOMER_DISAMBIGUATION

        second = restart(store, backend, settings)
        chosen = await second.handle_message("3", reply.session_id)
        assert chosen.task_step == TaskStep.ITEM_SELECTION
        assert "Carla Smith" in chosen.content

        await second.handle_message("1", reply.session_id)
        done = await second.handle_message("create invoice", reply.session_id)
        assert done.task_step == TaskStep.INVOICE_CREATION
        assert "INV-2024-005" in done.content

    @pytest.mark.asyncio
    async def test_pending_action_survives_restart(self, store, backend, settings):
        first = restart(store, backend, settings)
        reply = await first.handle_message("I spent $1500 on new laptops")
        action_id = reply.pending_actions[0].id

        second = restart(store, backend, settings)
        confirmed = await second.confirm_action(reply.session_id, action_id)
        assert confirmed is not None
        assert len(await backend.list_expenses(USER_ID)) == 1
        assert await second.confirm_action(reply.session_id, action_id) is None

    @pytest.mark.asyncio
    async def test_history_is_persisted(self, store, backend, settings):
        assistant = restart(store, backend, settings)
        reply = await assistant.handle_message("hello")
        await assistant.handle_message("help", reply.session_id)

        session = store.load_session(USER_ID, reply.session_id)
        assert [m.content for m in session.messages if m.role == "user"] == ["hello", "help"]
        assert session.title == "hello"
        assert store.list_sessions(USER_ID) == [reply.session_id]
