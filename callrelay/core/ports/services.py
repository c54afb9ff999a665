from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Connection(ABC):
    """Handle to one client channel, owned by the transport.

    The core keeps references only; it never opens connections and closes them
    solely when a superseded login is evicted.
    """

    @abstractmethod
    async def send(self, payload: dict[str, Any]) -> None:
        """Fire-and-forget delivery. Implementations must not raise on a dead peer."""
        raise NotImplementedError

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def label(self) -> str:
        """Short printable id for logs."""
        raise NotImplementedError


class IceConfigProvider(ABC):
    @abstractmethod
    async def get_servers(self, identity: str | None = None) -> dict[str, Any]:
        raise NotImplementedError
