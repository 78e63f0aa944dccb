"""Exceptions raised across pillar boundaries."""


class BizChatError(Exception):
    """Base class for all errors raised by the assistant."""


class LLMUnavailableError(BizChatError):
    """The language model could not be reached or did not answer in time."""


class BackendError(BizChatError):
    """A read or write against the business-data backend failed."""


class NotAuthenticatedError(BizChatError):
    """No authenticated user is available for the current operation."""


class InvalidTransitionError(BizChatError):
    """A task step or action status was moved along an illegal edge."""
