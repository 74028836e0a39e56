"""
Core interfaces for the authenticated API client.

This module defines the abstract interfaces that the client's external
collaborators must implement.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .models import Identity, TokenPair


class ITokenStore(ABC):
    """Durable holder for the current token pair and user identity."""

    @abstractmethod
    def get_access_token(self) -> Optional[str]:
        """Get the current access token."""
        pass

    @abstractmethod
    def get_refresh_token(self) -> Optional[str]:
        """Get the current refresh token."""
        pass

    @abstractmethod
    def set_access_token(self, token: str) -> None:
        """Replace the access token."""
        pass

    @abstractmethod
    def set_refresh_token(self, token: str) -> None:
        """Replace the refresh token."""
        pass

    @abstractmethod
    def clear_tokens(self) -> None:
        """Remove both tokens and the stored identity."""
        pass

    @abstractmethod
    def get_current_identity(self) -> Optional[Identity]:
        """Get the current authenticated user, if any."""
        pass

    @abstractmethod
    def set_current_identity(self, identity: Optional[Identity]) -> None:
        """Replace the stored identity."""
        pass

    def get_token_pair(self) -> TokenPair:
        """Snapshot of both tokens."""
        return TokenPair(
            access_token=self.get_access_token(),
            refresh_token=self.get_refresh_token(),
        )

    def store_token_pair(self, pair: TokenPair) -> None:
        """Write whichever tokens the pair carries."""
        if pair.access_token:
            self.set_access_token(pair.access_token)
        if pair.refresh_token:
            self.set_refresh_token(pair.refresh_token)


class INotificationSink(ABC):
    """Surface the host provides for single-line user-facing messages."""

    @abstractmethod
    def notify(self, message: str) -> None:
        """Display an error message to the user."""
        pass
