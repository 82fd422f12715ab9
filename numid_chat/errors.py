from __future__ import annotations


class NumidChatError(Exception):
    """Base error carrying the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConversationError(NumidChatError):
    """Malformed request content: empty conversation, trailing non-user turn, missing fields."""

    status_code = 400


class UpstreamError(NumidChatError):
    """The model provider failed (network, auth, quota)."""

    status_code = 500


class ConfigurationError(NumidChatError):
    """Required configuration is missing, e.g. the API key."""

    status_code = 500


class ContentShapeError(NumidChatError):
    """The model answered, but not in the shape the route promises."""

    status_code = 422
