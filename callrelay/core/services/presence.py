from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..domain.values import MAX_IDENTITY_LENGTH, UserIdentity
from ..ports.services import Connection

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Identity <-> connection map, the single source of truth for "who is online".

    Not thread-safe on its own: the owning router serialises every mutation.
    """

    def __init__(self, max_identity_length: int = MAX_IDENTITY_LENGTH) -> None:
        self.max_identity_length = max_identity_length
        self._by_identity: Dict[str, Connection] = {}
        self._by_connection: Dict[Connection, str] = {}

    def register(self, identity: str, connection: Connection) -> Optional[Connection]:
        """Map ``identity`` to ``connection``; last login wins.

        Returns the connection that previously held the identity (if it was a
        different one). That connection is abandoned, not closed. If
        ``connection`` already owned another identity, that identity is released.
        """
        value = UserIdentity(identity, self.max_identity_length).value
        previous_identity = self._by_connection.get(connection)
        if previous_identity is not None and previous_identity != value:
            self._by_identity.pop(previous_identity, None)
        superseded = self._by_identity.get(value)
        if superseded is connection:
            superseded = None
        elif superseded is not None:
            self._by_connection.pop(superseded, None)
            logger.info("PRESENCE_SUPERSEDE identity=%s old=%s new=%s", value, superseded.label, connection.label)
        self._by_identity[value] = connection
        self._by_connection[connection] = value
        return superseded

    def resolve(self, identity: str) -> Optional[Connection]:
        return self._by_identity.get(identity)

    def identity_of(self, connection: Connection) -> Optional[str]:
        return self._by_connection.get(connection)

    def unregister(self, connection: Connection) -> Optional[str]:
        identity = self._by_connection.pop(connection, None)
        if identity is not None and self._by_identity.get(identity) is connection:
            del self._by_identity[identity]
        return identity

    def list_identities(self) -> List[str]:
        return sorted(self._by_identity)

    def connections(self) -> List[Connection]:
        return list(self._by_identity.values())

    def __contains__(self, identity: object) -> bool:
        return identity in self._by_identity

    def __len__(self) -> int:
        return len(self._by_identity)
