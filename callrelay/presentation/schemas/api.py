from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    detail: str
    code: str


class PresenceOut(BaseModel):
    users: List[str]


class CallOut(BaseModel):
    callId: str
    kind: str
    state: str
    participants: List[str]
    pendingInvitees: List[str] = Field(default_factory=list)
    createdAt: datetime


class CallsOut(BaseModel):
    calls: List[CallOut]
