"""The confirmation gate: which planned actions may run without asking."""

from typing import Optional, Sequence

from .config import Settings, get_settings
from .models import CREATION_ACTIONS, Action, CreateExpense, CreateInvoice, Intent


class ConfirmationPolicy:
    """Decides whether a set of planned actions needs explicit user approval.

    Sensitive action types (and the intents of the same name) always need
    confirmation. Creation actions need it only when their monetary value
    exceeds ``Settings.confirmation_threshold``. Everything else auto-executes.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def monetary_value(self, action: Action) -> float:
        if isinstance(action, CreateExpense):
            return action.amount or 0.0
        if isinstance(action, CreateInvoice):
            return action.estimated_total
        return 0.0

    def needs_confirmation(self, intent: Intent, actions: Sequence[Action]) -> bool:
        sensitive = set(self.settings.sensitive_actions)
        if intent.value in sensitive:
            return True
        for action in actions:
            if action.type in sensitive:
                return True
            if (
                action.type in CREATION_ACTIONS
                and self.monetary_value(action) > self.settings.confirmation_threshold
            ):
                return True
        return False
