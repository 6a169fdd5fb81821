"""Error taxonomy shared by the sync, analysis and API layers.

Failures scoped to one message, attachment or evidence file are caught at that
granularity and only show up in counters. Failures scoped to a whole account
(``ReauthRequiredError``) propagate to the caller of that account's run.
"""
from __future__ import annotations


class InboxPayError(Exception):
    pass


class NotFoundError(InboxPayError):
    pass


class OAuthError(InboxPayError):
    """Code exchange or userinfo lookup against the provider failed."""


class UnsupportedProviderError(InboxPayError):
    pass


class ReauthRequiredError(InboxPayError):
    """The account's token cannot be refreshed; the user must authorize again."""

    def __init__(self, message: str, *, account_id: int | None = None, provider: str | None = None):
        super().__init__(message)
        self.account_id = account_id
        self.provider = provider


class ProviderError(InboxPayError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """A single list/get/attachment call failed after retries."""


class SyncInProgressError(InboxPayError):
    """Another run already holds this account's sync claim."""

    def __init__(self, message: str, *, account_id: int | None = None):
        super().__init__(message)
        self.account_id = account_id


class ParseError(InboxPayError):
    """The provider payload does not have a recognizable MIME shape."""


class ClassifierError(InboxPayError):
    pass


class ContentFetchError(InboxPayError):
    """An evidence file was unavailable or rejected by the size/dimension filters."""
