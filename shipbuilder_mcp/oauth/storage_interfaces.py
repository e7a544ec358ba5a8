# shipbuilder_mcp/oauth/storage_interfaces.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import AuthorizationCodeEntry, CodeStatus, PendingAuthorization


class AbstractAuthCodeBackend(ABC):
    """Storage strategy behind the authorization code store."""

    @abstractmethod
    async def save(self, entry: AuthorizationCodeEntry, ttl_seconds: int) -> None:
        """Store a code entry that should vanish after ttl_seconds."""
        pass

    @abstractmethod
    async def load(self, code: str) -> Optional[AuthorizationCodeEntry]:
        pass

    @abstractmethod
    async def replace_if_status(
        self, code: str, expected: CodeStatus, entry: AuthorizationCodeEntry
    ) -> bool:
        """
        Replace the stored entry only while its status still equals expected.
        Returns False when the entry is gone or was changed concurrently.
        """
        pass

    @abstractmethod
    async def delete(self, code: str) -> bool:
        """Remove a code. Returns True only for the caller that actually removed it."""
        pass

    @abstractmethod
    async def codes(self) -> List[str]:
        """Snapshot of stored codes, used by the expiry sweep."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        pass


class AbstractPendingAuthBackend(ABC):
    """Storage strategy behind the pending-authorization staging store."""

    @abstractmethod
    async def save(self, entry: PendingAuthorization, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def load(self, auth_id: str) -> Optional[PendingAuthorization]:
        pass

    @abstractmethod
    async def delete(self, auth_id: str) -> None:
        pass

    @abstractmethod
    async def ids(self) -> List[str]:
        """Snapshot of stored ids, used by cleanup() and stats()."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        pass
