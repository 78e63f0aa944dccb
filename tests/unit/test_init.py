"""Unit tests for Assistant initialization and configuration."""

from unittest.mock import Mock, patch

import pytest
from bizchat import Assistant
from bizchat.analyzer import LanguageModel, RuleBased, WithFallback
from bizchat.auth import Anonymous, SingleUser
from bizchat.backend import InMemory as InMemoryBackend
from bizchat.config import Settings
from bizchat.engine import Orchestrator
from bizchat.exceptions import NotAuthenticatedError
from bizchat.llm import NoLLM, Scripted
from bizchat.policy import ConfirmationPolicy
from bizchat.store import InMemory
from bizchat.tasks import InvoiceFlow


@pytest.fixture
def quiet_settings():
    return Settings(_env_file=None)


class TestAssistantInit:
    """Test Assistant initialization and pillar configuration."""

    def test_default_initialization(self, quiet_settings):
        with patch("bizchat.llm.OpenAI") as mock_openai:
            app = Assistant(settings=quiet_settings)

        assert app.llm is mock_openai.return_value
        assert isinstance(app.store, InMemory)
        assert isinstance(app.backend, InMemoryBackend)
        assert isinstance(app.auth, SingleUser)
        assert isinstance(app.policy, ConfirmationPolicy)
        assert isinstance(app.flow, InvoiceFlow)

    def test_default_analyzer_wraps_llm(self, quiet_settings):
        llm = Scripted()
        app = Assistant(llm=llm, settings=quiet_settings)

        assert isinstance(app.analyzer, WithFallback)
        assert isinstance(app.analyzer.primary, LanguageModel)
        assert app.analyzer.primary.llm is llm
        assert isinstance(app.analyzer.fallback, RuleBased)

    def test_custom_pillars(self, quiet_settings, mock_auth):
        mock_llm, mock_store, mock_backend, mock_analyzer = Mock(), Mock(), Mock(), Mock()
        app = Assistant(
            llm=mock_llm,
            store=mock_store,
            backend=mock_backend,
            auth=mock_auth,
            analyzer=mock_analyzer,
            settings=quiet_settings,
        )

        assert app.llm is mock_llm
        assert app.store is mock_store
        assert app.backend is mock_backend
        assert app.auth is mock_auth
        assert app.analyzer is mock_analyzer
        assert app.executor.backend is mock_backend
        assert app.executor.auth is mock_auth
        assert app.flow.backend is mock_backend

    def test_settings_reach_policy(self):
        settings = Settings(_env_file=None, confirmation_threshold=250)
        app = Assistant(llm=NoLLM(), settings=settings)
        assert app.settings is settings
        assert app.policy.settings.confirmation_threshold == 250

    def test_rule_based_fallback_without_openai(self, quiet_settings):
        """Falls back to the rule-based analyzer when openai is not installed."""
        with patch("bizchat.llm.OpenAI", side_effect=ImportError):
            with pytest.warns(UserWarning, match="rule-based"):
                app = Assistant(settings=quiet_settings)

        assert isinstance(app.llm, NoLLM)
        assert not app.analyzer.primary.is_available()


class TestEngineInitialization:
    """Test engine initialization and lazy binding."""

    def test_default_engine_initialization(self, quiet_settings):
        app = Assistant(llm=NoLLM(), settings=quiet_settings)

        assert isinstance(app.engine, Orchestrator)
        assert app.engine.app is app

    def test_custom_engine_instance_with_lazy_binding(self, quiet_settings):
        custom_engine = Orchestrator()
        assert custom_engine.app is None

        app = Assistant(llm=NoLLM(), engine=custom_engine, settings=quiet_settings)

        assert app.engine is custom_engine
        assert custom_engine.app is app

    def test_custom_engine_subclass_with_lazy_binding(self, quiet_settings):
        class CustomEngine(Orchestrator):
            def __init__(self, app=None):
                super().__init__(app)
                self.custom_attr = "test"

        custom_engine = CustomEngine()
        app = Assistant(llm=NoLLM(), engine=custom_engine, settings=quiet_settings)

        assert custom_engine.app is app
        assert custom_engine.custom_attr == "test"

    def test_engine_with_pre_existing_app_reference(self, quiet_settings):
        mock_app = Mock()
        custom_engine = Orchestrator(mock_app)

        new_app = Assistant(llm=NoLLM(), engine=custom_engine, settings=quiet_settings)

        assert custom_engine.app is new_app
        assert custom_engine.app is not mock_app


class TestAuthentication:
    def test_session_access_requires_user(self, quiet_settings):
        app = Assistant(llm=NoLLM(), auth=Anonymous(), settings=quiet_settings)
        with pytest.raises(NotAuthenticatedError):
            app.list_sessions()

    @pytest.mark.asyncio
    async def test_start_session_requires_user(self, quiet_settings):
        app = Assistant(llm=NoLLM(), auth=Anonymous(), settings=quiet_settings)
        with pytest.raises(NotAuthenticatedError):
            await app.start_session()
