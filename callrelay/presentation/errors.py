from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AlreadyInCall,
    DomainError,
    DuplicateInvite,
    MalformedMessage,
    NotAuthenticated,
    RecipientOffline,
    SessionNotFound,
)

_STATUS: dict[type[DomainError], int] = {
    MalformedMessage: 400,
    NotAuthenticated: 401,
    RecipientOffline: 404,
    SessionNotFound: 404,
    DuplicateInvite: 409,
    AlreadyInCall: 409,
}


def setup_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def _domain(_: Request, exc: DomainError):
        status = next((code for cls, code in _STATUS.items() if isinstance(exc, cls)), 400)
        return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.code})
