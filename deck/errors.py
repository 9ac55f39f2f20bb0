from __future__ import annotations


class DeckError(Exception):
    """Base class for errors surfaced by the sync core."""


class ProviderCallFailed(DeckError):
    """A calendar provider call failed (network, auth or server side)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class AuthExpired(ProviderCallFailed):
    pass


class ProviderUnavailable(ProviderCallFailed):
    pass


class RefreshDenied(DeckError):
    """The provider rejected the refresh token; the account must be reconnected."""

    def __init__(self, provider: str, message: str = "refresh token rejected") -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class NotConfigured(DeckError):
    """Provider integration is not configured for this deployment."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} calendar is not configured")
        self.provider = provider


class StoreError(DeckError):
    pass


class NotFound(DeckError):
    pass


class ValidationError(DeckError):
    pass
