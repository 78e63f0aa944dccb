"""Concrete implementations for authentication managers."""

from abc import ABC, abstractmethod
from typing import Optional


class Auth(ABC):
    """Interface for identifying the current user."""

    @abstractmethod
    def get_current_user_id(self, **kwargs) -> Optional[str]:
        """Returns the ID of the current user, or None when nobody is signed in."""
        pass

    def is_authenticated(self, **kwargs) -> bool:
        return bool(self.get_current_user_id(**kwargs))


class SingleUser(Auth):
    """A simple auth manager for single-user deployments."""

    def __init__(self, user_id: str = "owner"):
        """Initialize with a user ID.

        Parameters
        ----------
        user_id : str, default="owner"
            User identifier. Non-string values will be converted to strings
            to enforce the Auth interface contract.
        """
        self._user_id = str(user_id)

    def get_current_user_id(self, **kwargs) -> Optional[str]:
        return self._user_id


class Anonymous(Auth):
    """Nobody is signed in. Every write path fails with an auth error."""

    def get_current_user_id(self, **kwargs) -> Optional[str]:
        return None
