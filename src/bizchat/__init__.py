"""
The main entrypoint for the bizchat package.

This module contains the ``Assistant`` class, which wires the pluggable
pillars (language model, conversation store, business backend, identity)
into a conversational orchestrator for invoicing tasks.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

from . import analyzer, auth, backend, engine, llm, replies, store
from .config import Settings, get_settings
from .exceptions import NotAuthenticatedError
from .executor import Executor
from .models import (
    ASSISTANT_ROLE,
    AssistantReply,
    ConversationMessage,
    ConversationSession,
    SessionStatus,
)
from .policy import ConfirmationPolicy
from .tasks import InvoiceFlow

__all__ = ["Assistant", "Settings"]

logger = logging.getLogger(__name__)


class Assistant:
    """
    A conversational assistant for small-business invoicing.

    This class owns the pillars and the session lifecycle. Each message is
    processed to completion before the next message for the same session is
    accepted; different sessions proceed concurrently.
    """

    def __init__(
        self,
        llm: Optional[llm.LLM] = None,
        store: Optional[store.Store] = None,
        backend: Optional[backend.Backend] = None,
        auth: Optional[auth.Auth] = None,
        analyzer: Optional[analyzer.Analyzer] = None,
        engine: Optional[engine.Engine] = None,
        settings: Optional[Settings] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        """
        Initialize the assistant with configurable pillars.

        Parameters
        ----------
        llm : llm.LLM, optional
            Language model used for intent classification.
            Defaults to llm.OpenAI(); falls back to llm.NoLLM() when the
            'openai' package is not installed.
        store : store.Store, optional
            Persistence for conversation sessions.
            Defaults to store.InMemory() for process-lifetime storage.
        backend : backend.Backend, optional
            Business-data backend for customers, invoices and expenses.
            Defaults to backend.InMemory().
        auth : auth.Auth, optional
            Identity provider. Defaults to auth.SingleUser().
        analyzer : analyzer.Analyzer, optional
            Intent analyzer. Defaults to the language model with the
            rule-based classifier as fallback.
        engine : engine.Engine, optional
            Turn orchestrator. Defaults to engine.Orchestrator().
        settings : Settings, optional
            Configuration. Defaults to ``get_settings()``.
        today : callable, optional
            Returns the current date; injected for reproducible numbering
            and reports.

        Examples
        --------
        Fully offline, rule-based assistant:

        >>> from bizchat import Assistant, llm
        >>> assistant = Assistant(llm=llm.NoLLM())

        Custom configuration:

        >>> assistant = Assistant(
        ...     llm=llm.Anthropic(),
        ...     store=store.SQLite(db_path="conversations.db"),
        ...     settings=Settings(confirmation_threshold=500),
        ... )
        """
        llm_module = globals()["llm"]
        store_module = globals()["store"]
        backend_module = globals()["backend"]
        auth_module = globals()["auth"]
        analyzer_module = globals()["analyzer"]
        engine_module = globals()["engine"]

        self.settings = settings or get_settings()

        if llm:
            self.llm = llm
        else:
            try:
                self.llm = llm_module.OpenAI()
            except ImportError:
                import warnings

                warnings.warn(
                    "bizchat is running with the rule-based analyzer only because the 'openai' package is not installed. "
                    'For the default OpenAI integration, install with: pip install "bizchat[default]"',
                    UserWarning,
                )
                self.llm = llm_module.NoLLM()

        self.store = store if store is not None else store_module.InMemory()
        self.backend = backend if backend is not None else backend_module.InMemory()
        self.auth = auth if auth is not None else auth_module.SingleUser()
        self.analyzer = (
            analyzer
            if analyzer is not None
            else analyzer_module.WithFallback(
                analyzer_module.LanguageModel(self.llm, self.settings),
                analyzer_module.RuleBased(),
            )
        )
        self.policy = ConfirmationPolicy(self.settings)
        self.executor = Executor(self.backend, self.auth, self.settings, today=today)
        self.flow = InvoiceFlow(self.backend, self.executor, self.settings)

        self.engine = engine if engine is not None else engine_module.Orchestrator()
        self.engine.app = self

        self._locks: Dict[Tuple[str, Optional[str]], asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- Helpers ---
    def _user_id(self) -> str:
        user_id = self.auth.get_current_user_id()
        if not user_id:
            raise NotAuthenticatedError("No authenticated user")
        return user_id

    def _lock(self, user_id: str, session_id: Optional[str]) -> asyncio.Lock:
        return self._locks[(user_id, session_id)]

    def _not_signed_in(self, session_id: Optional[str] = None) -> AssistantReply:
        return AssistantReply(
            session_id=session_id,
            message=ConversationMessage(
                role=ASSISTANT_ROLE, content=replies.NOT_SIGNED_IN, session_id=session_id
            ),
        )

    # --- Sessions ---
    async def start_session(self) -> ConversationSession:
        """Create a new session with a fresh context and a welcome message."""
        user_id = self._user_id()
        # Serializes id allocation for the user.
        async with self._lock(user_id, None):
            return await self.engine.create_session(user_id)

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        return self.store.load_session(self._user_id(), session_id)

    def list_sessions(self) -> List[str]:
        """Session ids for the current user, most recently updated first."""
        return self.store.list_sessions(self._user_id())

    async def _set_status(self, session_id: str, status: SessionStatus) -> bool:
        user_id = self._user_id()
        async with self._lock(user_id, session_id):
            session = self.store.load_session(user_id, session_id)
            if session is None:
                return False
            session.status = status
            if status == SessionStatus.COMPLETED:
                session.context.current_task = None
            self.store.save_session(user_id, session)
        logger.info("Session %s is now %s", session_id, status.value)
        return True

    async def end_session(self, session_id: str) -> bool:
        return await self._set_status(session_id, SessionStatus.COMPLETED)

    async def pause_session(self, session_id: str) -> bool:
        return await self._set_status(session_id, SessionStatus.PAUSED)

    async def resume_session(self, session_id: str) -> bool:
        return await self._set_status(session_id, SessionStatus.ACTIVE)

    async def delete_session(self, session_id: str) -> bool:
        user_id = self._user_id()
        async with self._lock(user_id, session_id):
            deleted = self.store.delete_session(user_id, session_id)
        self._locks.pop((user_id, session_id), None)
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    # --- Turns ---
    async def handle_message(
        self, text: str, session_id: Optional[str] = None
    ) -> AssistantReply:
        """
        Process one user message.

        Parameters
        ----------
        text : str
            The user's message.
        session_id : str, optional
            The session to continue. A new session is started when omitted.

        Returns
        -------
        AssistantReply
            The assistant's message plus any actions awaiting confirmation.
        """
        user_id = self.auth.get_current_user_id()
        if not user_id:
            return self._not_signed_in(session_id)
        if not session_id:
            session_id = (await self.start_session()).id
        async with self._lock(user_id, session_id):
            return await self.engine.handle_message(text, user_id, session_id)

    async def confirm_action(
        self, session_id: str, action_id: str
    ) -> Optional[AssistantReply]:
        """Execute a pending action. Returns None if it is no longer pending."""
        user_id = self.auth.get_current_user_id()
        if not user_id:
            return self._not_signed_in(session_id)
        async with self._lock(user_id, session_id):
            return await self.engine.confirm_action(user_id, session_id, action_id)

    async def reject_action(
        self, session_id: str, action_id: str
    ) -> Optional[AssistantReply]:
        """Drop a pending action without executing it."""
        user_id = self.auth.get_current_user_id()
        if not user_id:
            return self._not_signed_in(session_id)
        async with self._lock(user_id, session_id):
            return await self.engine.reject_action(user_id, session_id, action_id)
