"""Unit tests for the engine module."""

from typing import get_args
from unittest.mock import AsyncMock, Mock, patch

import pytest
from bizchat import Assistant, replies
from bizchat.analyzer import Analyzer
from bizchat.engine import ACTION_INTENTS, TITLE_LENGTH, Engine, Orchestrator, make_title
from bizchat.llm import NoLLM
from bizchat.models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    Action,
    Analysis,
    ConversationEntity,
    EntityType,
    Intent,
    SessionStatus,
)

USER_ID = "owner"


class Fixed(Analyzer):
    """Always returns the same analysis."""

    def __init__(self, analysis):
        self.analysis = analysis
        self.seen = []

    async def analyze(self, message, context, history=()):
        self.seen.append((message, list(history)))
        return self.analysis


class Exploding(Analyzer):
    async def analyze(self, message, context, history=()):
        raise RuntimeError("boom")


def build(backend, settings, analyzer):
    return Assistant(llm=NoLLM(), backend=backend, settings=settings, analyzer=analyzer)


class TestEngineBase:
    """Test the abstract Engine base class."""

    def test_engine_is_abstract(self):
        with pytest.raises(TypeError, match="Can't instantiate abstract class"):
            Engine()

    def test_engine_with_app_reference(self):
        mock_app = Mock()

        class ConcreteEngine(Engine):
            async def handle_message(self, user_input, user_id, session_id):
                return None

            async def create_session(self, user_id, session_id=None):
                return None

            async def confirm_action(self, user_id, session_id, action_id):
                return None

            async def reject_action(self, user_id, session_id, action_id):
                return None

        engine = ConcreteEngine(mock_app)
        assert engine.app is mock_app
        assert ConcreteEngine().app is None

    def test_orchestrator_without_app(self):
        assert Orchestrator().app is None


class TestTitles:
    def test_short_text_is_kept(self):
        assert make_title("Create an invoice for James") == "Create an invoice for James"

    def test_whitespace_is_collapsed(self):
        assert make_title("  hello \n  there ") == "hello there"

    def test_long_text_is_truncated(self):
        title = make_title("x" * 80)
        assert title == "x" * TITLE_LENGTH + "..."


class TestActionIntents:
    def test_every_action_type_maps_to_an_intent(self):
        union = get_args(Action)[0]
        types = {cls.model_fields["type"].default for cls in get_args(union)}
        assert set(ACTION_INTENTS) == types


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_session_starts_with_welcome(self, backend, settings):
        assistant = build(backend, settings, Fixed(Analysis()))
        session = await assistant.engine.create_session(USER_ID)

        assert session.id == "001"
        (welcome,) = session.messages
        assert welcome.role == ASSISTANT_ROLE
        assert "Acme Studio" in welcome.content
        assert welcome.metadata.suggested_actions == replies.WELCOME_SUGGESTIONS
        assert assistant.store.load_session(USER_ID, "001") is not None

    @pytest.mark.asyncio
    async def test_unknown_session_id_is_created(self, backend, settings):
        assistant = build(backend, settings, Fixed(Analysis(intent=Intent.GREETING)))
        reply = await assistant.engine.handle_message("hi", USER_ID, "abc")
        assert reply.session_id == "abc"
        assert len(assistant.store.load_session(USER_ID, "abc").messages) == 3

    @pytest.mark.asyncio
    async def test_failure_becomes_apology(self, backend, settings):
        assistant = build(backend, settings, Exploding())
        session = await assistant.start_session()

        reply = await assistant.handle_message("Create an invoice for James", session.id)

        assert reply.content == replies.APOLOGY
        assert not reply.needs_confirmation
        saved = assistant.store.load_session(USER_ID, session.id)
        assert [m.role for m in saved.messages] == [ASSISTANT_ROLE, USER_ROLE, ASSISTANT_ROLE]

    @pytest.mark.asyncio
    async def test_title_from_first_message(self, backend, settings):
        assistant = build(backend, settings, Fixed(Analysis(intent=Intent.HELP)))
        reply = await assistant.handle_message("What can you do?")
        await assistant.handle_message("Anything else?", reply.session_id)
        assert assistant.get_session(reply.session_id).title == "What can you do?"

    @pytest.mark.asyncio
    async def test_history_excludes_current_message(self, backend, settings):
        analyzer = Fixed(Analysis(intent=Intent.GREETING))
        assistant = build(backend, settings, analyzer)
        reply = await assistant.handle_message("hello")
        await assistant.handle_message("hello again", reply.session_id)

        message, history = analyzer.seen[-1]
        assert message == "hello again"
        assert [m.content for m in history][-1] != "hello again"
        assert len(history) == 3

    @pytest.mark.asyncio
    async def test_message_reactivates_paused_session(self, backend, settings):
        assistant = build(backend, settings, Fixed(Analysis(intent=Intent.GREETING)))
        session = await assistant.start_session()
        await assistant.pause_session(session.id)
        await assistant.handle_message("hello", session.id)
        assert assistant.get_session(session.id).status == SessionStatus.ACTIVE

    @pytest.mark.parametrize(
        "intent, expected",
        [
            (Intent.HELP, replies.HELP_TEXT),
            (Intent.UNKNOWN, replies.UNKNOWN),
            (Intent.EDIT_INVOICE, replies.OUT_OF_SCOPE[Intent.EDIT_INVOICE]),
            (Intent.SCAN_RECEIPT, replies.OUT_OF_SCOPE[Intent.SCAN_RECEIPT]),
        ],
    )
    @pytest.mark.asyncio
    async def test_no_action_replies(self, backend, settings, intent, expected):
        analysis = Analysis(
            intent=intent,
            entities=[ConversationEntity(type=EntityType.INVOICE, value="INV-1")],
        )
        assistant = build(backend, settings, Fixed(analysis))
        reply = await assistant.handle_message("something")
        assert reply.content == expected
        assert reply.message.metadata.intent == intent

    @pytest.mark.asyncio
    async def test_missing_information_asks(self, backend, settings):
        assistant = build(backend, settings, Fixed(Analysis(intent=Intent.ADD_EXPENSE)))
        reply = await assistant.handle_message("log an expense")
        assert reply.content.startswith("I'd be happy to help you with that!")
        assert not reply.message.metadata.actions

    @pytest.mark.asyncio
    async def test_sensitive_action_waits(self, backend, settings):
        analysis = Analysis(
            intent=Intent.DELETE_CUSTOMER,
            entities=[ConversationEntity(type=EntityType.CUSTOMER, value="Bob Smith")],
        )
        assistant = build(backend, settings, Fixed(analysis))
        reply = await assistant.handle_message("remove Bob")

        assert reply.needs_confirmation
        (action,) = reply.pending_actions
        assert action.type == "delete_customer"
        assert reply.suggested_actions == ["Confirm", "Cancel"]
        assert len(await backend.search_customers(USER_ID, "Bob")) == 1

        saved = assistant.get_session(reply.session_id)
        assert action.id in saved.pending_actions

    @pytest.mark.asyncio
    async def test_confirm_unknown_ids(self, backend, settings):
        assistant = build(backend, settings, Fixed(Analysis()))
        session = await assistant.start_session()
        assert await assistant.engine.confirm_action(USER_ID, session.id, "nope") is None
        assert await assistant.engine.confirm_action(USER_ID, "999", "nope") is None
        assert await assistant.engine.reject_action(USER_ID, session.id, "nope") is None

    @pytest.mark.asyncio
    async def test_confirm_survives_executor_crash(self, backend, settings):
        analysis = Analysis(
            intent=Intent.DELETE_CUSTOMER,
            entities=[ConversationEntity(type=EntityType.CUSTOMER, value="Bob Smith")],
        )
        assistant = build(backend, settings, Fixed(analysis))
        reply = await assistant.handle_message("remove Bob")
        (action,) = reply.pending_actions

        with patch.object(
            assistant.executor, "execute", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            confirmed = await assistant.confirm_action(reply.session_id, action.id)

        assert confirmed.content == replies.APOLOGY
        saved = assistant.get_session(reply.session_id)
        assert saved.messages[-1].content == replies.APOLOGY
        assert action.id not in saved.pending_actions

    @pytest.mark.asyncio
    async def test_history_is_limited_to_window(self, backend):
        from bizchat.config import Settings

        analyzer = Fixed(Analysis(intent=Intent.GREETING))
        assistant = build(backend, Settings(_env_file=None, history_window=2), analyzer)
        reply = await assistant.handle_message("one")
        await assistant.handle_message("two", reply.session_id)
        await assistant.handle_message("three", reply.session_id)

        message, history = analyzer.seen[-1]
        assert message == "three"
        assert [m.role for m in history] == [USER_ROLE, ASSISTANT_ROLE]
        assert history[0].content == "two"
