"""Exception hierarchy for the signal feed pipeline."""
from typing import Optional


class AlphaFeedError(Exception):
    """Base class for all pipeline errors."""


class AuthenticationError(AlphaFeedError):
    """No authentication strategy produced a valid session."""


class FetchError(AlphaFeedError):
    """A live fetch against the content source failed."""

    def __init__(self, message: str, subject: Optional[str] = None):
        super().__init__(message)
        self.subject = subject


class SessionExpiredError(FetchError):
    """The content source rejected the current session."""


class ScoringError(AlphaFeedError):
    """Scoring a single item failed (oracle error or malformed output)."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id


class PublishError(AlphaFeedError):
    """Publishing the digest envelope or its snapshot failed."""
