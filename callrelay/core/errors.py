from __future__ import annotations


class DomainError(Exception):
    """Базовая доменная ошибка.

    Every subclass carries a stable kebab-case ``code`` used on the wire. None of
    them is fatal for the connection that caused it.
    """

    code: str = "domain-error"


class MalformedMessage(DomainError):
    code = "malformed-message"


class InvalidIdentity(MalformedMessage):
    code = "invalid-identity"


class NotAuthenticated(DomainError):
    code = "not-authenticated"


class RecipientOffline(DomainError):
    code = "recipient-offline"


class SessionNotFound(DomainError):
    code = "session-not-found"


class DuplicateInvite(DomainError):
    code = "duplicate-invite"


class AlreadyInCall(DomainError):
    code = "already-in-call"
