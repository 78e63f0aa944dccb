"""
The orchestration engine.

An engine sequences one conversational turn across the pillars attached to
the ``Assistant``: load the session, analyze the message, resolve missing
information or drive the active task, plan, gate, execute and persist.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from . import replies
from .context import build_context
from .models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    Action,
    ActionResult,
    Analysis,
    AssistantReply,
    ConversationSession,
    Intent,
    MessageMetadata,
    SessionStatus,
)
from .planner import plan
from .resolver import clarifying_question, identify_missing
from .tasks import FlowOutcome

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50

ACTION_INTENTS = {
    "create_invoice": Intent.CREATE_INVOICE,
    "create_customer": Intent.CREATE_CUSTOMER,
    "create_expense": Intent.ADD_EXPENSE,
    "search_customers": Intent.FIND_CUSTOMER,
    "generate_financial_report": Intent.GENERATE_REPORT,
    "navigate_to_invoice": Intent.CREATE_INVOICE,
    "find_invoice": Intent.TRACK_PAYMENT,
    "send_invoice": Intent.SEND_INVOICE,
    "delete_invoice": Intent.DELETE_INVOICE,
    "delete_customer": Intent.DELETE_CUSTOMER,
}


class Turn(BaseModel):
    """What one turn produced, before it becomes an assistant message."""

    content: str
    suggestions: List[str] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    pending: List[Action] = Field(default_factory=list)
    data: Optional[Dict[str, Any]] = None


def make_title(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= TITLE_LENGTH:
        return text
    return text[:TITLE_LENGTH] + "..."


class Engine(ABC):
    """Abstract base class for all orchestration engines."""

    def __init__(self, app: Optional[Any] = None) -> None:
        self.app = app

    @abstractmethod
    async def handle_message(
        self, user_input: str, user_id: str, session_id: Optional[str]
    ) -> AssistantReply:
        """Process one user message and return the assistant's reply."""
        pass

    @abstractmethod
    async def create_session(
        self, user_id: str, session_id: Optional[str] = None
    ) -> ConversationSession:
        pass

    @abstractmethod
    async def confirm_action(
        self, user_id: str, session_id: str, action_id: str
    ) -> Optional[AssistantReply]:
        pass

    @abstractmethod
    async def reject_action(
        self, user_id: str, session_id: str, action_id: str
    ) -> Optional[AssistantReply]:
        pass


class Orchestrator(Engine):
    """Runs one turn to completion against the app's pillars.

    The engine reads ``app.store``, ``app.backend``, ``app.analyzer``,
    ``app.policy``, ``app.executor``, ``app.flow`` and ``app.settings``.
    Serializing turns per session is the caller's job.
    """

    # --- Sessions ---
    async def create_session(
        self, user_id: str, session_id: Optional[str] = None
    ) -> ConversationSession:
        app = self.app
        session_id = session_id or app.store.get_next_session_id(user_id)
        context = await build_context(app.backend, user_id, app.settings)
        session = ConversationSession(id=session_id, user_id=user_id, context=context)
        session.append(
            ASSISTANT_ROLE,
            replies.welcome(context),
            MessageMetadata(
                intent=Intent.GREETING,
                suggested_actions=list(replies.WELCOME_SUGGESTIONS),
            ),
        )
        app.store.save_session(user_id, session)
        logger.info("Started session %s for user %s", session.id, user_id)
        return session

    async def load_or_create(
        self, user_id: str, session_id: Optional[str]
    ) -> ConversationSession:
        if session_id:
            session = self.app.store.load_session(user_id, session_id)
            if session is not None:
                return session
        return await self.create_session(user_id, session_id)

    # --- Turns ---
    async def handle_message(self, user_input, user_id, session_id):
        session = await self.load_or_create(user_id, session_id)
        text = user_input.strip()
        history = session.history(self.app.settings.history_window)
        session.append(USER_ROLE, text)
        if not session.title:
            session.title = make_title(text)
        if session.status != SessionStatus.ACTIVE:
            session.status = SessionStatus.ACTIVE

        analysis = Analysis()
        try:
            analysis = await self.app.analyzer.analyze(text, session.context, history)
            logger.debug("Analysis for session %s: %s", session.id, analysis)
            turn = await self._run_turn(session, user_id, text, analysis)
        except Exception:
            logger.exception("Turn failed for session %s", session.id)
            turn = Turn(content=replies.APOLOGY, suggestions=["Try again"])

        return self._finish(session, user_id, analysis, turn)

    async def _run_turn(
        self,
        session: ConversationSession,
        user_id: str,
        text: str,
        analysis: Analysis,
    ) -> Turn:
        context = session.context
        flow = self.app.flow

        if context.current_task is not None:
            outcome = await flow.handle(user_id, text, analysis, context, session.id)
            return await self._from_flow(session, analysis, outcome)

        if analysis.intent == Intent.GREETING:
            return Turn(
                content=replies.greeting(context),
                suggestions=replies.suggested_actions(analysis.intent),
            )
        if analysis.intent == Intent.HELP:
            return Turn(
                content=replies.HELP_TEXT,
                suggestions=replies.suggested_actions(analysis.intent),
            )
        if analysis.intent == Intent.CREATE_INVOICE:
            outcome = await flow.start(user_id, analysis, context, session.id)
            return await self._from_flow(session, analysis, outcome)

        missing = identify_missing(analysis, context)
        if missing:
            return Turn(content=clarifying_question(missing))

        actions = plan(analysis, context)
        if not actions:
            return Turn(
                content=replies.out_of_scope(analysis.intent) or replies.UNKNOWN,
                suggestions=replies.suggested_actions(analysis.intent),
            )
        return await self._gate_and_run(session, analysis, actions)

    async def _gate_and_run(
        self,
        session: ConversationSession,
        analysis: Analysis,
        actions: Sequence[Action],
    ) -> Turn:
        if self.app.policy.needs_confirmation(analysis.intent, actions):
            return Turn(
                content=replies.confirmation_message(
                    actions, session.context.user_preferences.currency
                ),
                suggestions=["Confirm", "Cancel"],
                pending=list(actions),
            )

        results: List[ActionResult] = []
        for action in actions:
            results.append(await self.app.executor.execute(action, session.context, session.id))
        return Turn(
            content="\n\n".join(replies.result_message(a, r) for a, r in zip(actions, results)),
            suggestions=replies.suggested_actions(analysis.intent, results),
            actions=list(actions),
            data=next((r.data for r in results if r.success and r.data), None),
        )

    async def _from_flow(
        self,
        session: ConversationSession,
        analysis: Analysis,
        outcome: FlowOutcome,
    ) -> Turn:
        turn = Turn(
            content=outcome.message,
            suggestions=outcome.suggestions,
            actions=list(outcome.executed),
            pending=list(outcome.pending),
            data=outcome.data,
        )
        if outcome.actions:
            planned = await self._gate_and_run(session, analysis, outcome.actions)
            turn.content = "\n\n".join(part for part in (turn.content, planned.content) if part)
            turn.suggestions = planned.suggestions or turn.suggestions
            turn.actions.extend(planned.actions)
            turn.pending.extend(planned.pending)
            turn.data = turn.data or planned.data
        return turn

    def _finish(
        self,
        session: ConversationSession,
        user_id: str,
        analysis: Analysis,
        turn: Turn,
    ) -> AssistantReply:
        for action in turn.pending:
            session.pending_actions[action.id] = action
        metadata = MessageMetadata(
            intent=analysis.intent,
            entities=analysis.entities,
            actions=[*turn.actions, *turn.pending],
            confidence=analysis.confidence,
            suggested_actions=turn.suggestions,
            data=turn.data,
        )
        message = session.append(ASSISTANT_ROLE, turn.content, metadata)
        self.app.store.save_session(user_id, session)
        task = session.context.current_task
        return AssistantReply(
            session_id=session.id,
            message=message,
            needs_confirmation=bool(turn.pending),
            pending_actions=turn.pending,
            task_step=task.step if task else None,
        )

    # --- Confirmation ---
    async def confirm_action(
        self, user_id: str, session_id: str, action_id: str
    ) -> Optional[AssistantReply]:
        """Execute a pending action once. Unknown or already-handled ids return None."""
        session = self.app.store.load_session(user_id, session_id)
        if session is None:
            return None
        action = session.pending_actions.pop(action_id, None)
        if action is None:
            return None

        analysis = Analysis(intent=ACTION_INTENTS[action.type], confidence=1.0)
        try:
            result = await self.app.executor.execute(action, session.context, session.id)
            turn = Turn(
                content=replies.result_message(action, result),
                suggestions=result.suggestions,
                actions=[action],
                data=result.data,
            )
        except Exception:
            logger.exception("Confirmed action %s failed in session %s", action.id, session.id)
            turn = Turn(content=replies.APOLOGY, suggestions=["Try again"], actions=[action])
        return self._finish(session, user_id, analysis, turn)

    async def reject_action(
        self, user_id: str, session_id: str, action_id: str
    ) -> Optional[AssistantReply]:
        session = self.app.store.load_session(user_id, session_id)
        if session is None:
            return None
        action = session.pending_actions.pop(action_id, None)
        if action is None:
            return None
        logger.info("Action %s rejected in session %s", action.type, session.id)
        return self._finish(
            session,
            user_id,
            Analysis(),
            Turn(content=replies.REJECTED, suggestions=list(replies.WELCOME_SUGGESTIONS)),
        )
