from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4


class CallState(str, Enum):
    ringing = "ringing"
    connected = "connected"
    terminated = "terminated"


class CallKind(str, Enum):
    direct = "direct"
    conference = "conference"


class InviteState(str, Enum):
    invited = "invited"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"


@dataclass(slots=True)
class Invite:
    id: UUID
    invitee: str
    inviter: str
    created_at: datetime
    state: InviteState = InviteState.invited

    @staticmethod
    def create(inviter: str, invitee: str) -> "Invite":
        return Invite(id=uuid4(), invitee=invitee, inviter=inviter, created_at=datetime.utcnow())


@dataclass(slots=True)
class CallSession:
    """Relay-side state of one call or conference.

    ``participants`` holds joined identities (both parties of a ringing 1:1 call
    count as joined so their ICE exchange can flow before the answer).
    """

    id: UUID
    kind: CallKind
    state: CallState
    created_at: datetime
    participants: set[str] = field(default_factory=set)
    pending_invites: dict[str, Invite] = field(default_factory=dict)
    caller: Optional[str] = None
    callee: Optional[str] = None
    # callee of a 1:1 call has sent call-answer
    answered: bool = False

    @staticmethod
    def direct(caller: str, callee: str) -> "CallSession":
        return CallSession(
            id=uuid4(),
            kind=CallKind.direct,
            state=CallState.ringing,
            created_at=datetime.utcnow(),
            participants={caller, callee},
            caller=caller,
            callee=callee,
        )

    @staticmethod
    def conference(host: str) -> "CallSession":
        return CallSession(
            id=uuid4(),
            kind=CallKind.conference,
            state=CallState.ringing,
            created_at=datetime.utcnow(),
            participants={host},
            caller=host,
        )

    @property
    def active(self) -> bool:
        return self.state is not CallState.terminated

    def others(self, identity: str) -> list[str]:
        return sorted(p for p in self.participants if p != identity)

    def snapshot(self) -> dict:
        return {
            "callId": str(self.id),
            "kind": self.kind.value,
            "state": self.state.value,
            "participants": sorted(self.participants),
            "pendingInvitees": sorted(self.pending_invites),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class LeaveResult:
    session: CallSession
    identity: str
    remaining: list[str]
    terminated: bool
    # Invites the leaver had issued, withdrawn together with them
    withdrawn: list[Invite] = field(default_factory=list)


@dataclass(slots=True)
class Departure:
    """One consequence of an identity dropping out (disconnect or logout)."""

    session: CallSession
    left: Optional[LeaveResult] = None
    # Invites addressed to the identity, now implicitly rejected
    rejected_invites: list[Invite] = field(default_factory=list)


class MessageKind(str, Enum):
    login = "login"
    logout = "logout"
    presence_query = "presence-query"
    call_offer = "call-offer"
    call_answer = "call-answer"
    call_reject = "call-reject"
    ice_candidate = "ice-candidate"
    join_invite = "join-invite"
    invite_accept = "invite-accept"
    invite_reject = "invite-reject"
    participant_joined = "participant-joined"
    participant_left = "participant-left"
    in_call_tone = "in-call-tone"
    leave_call = "leave-call"
    ping = "ping"

    @staticmethod
    def parse(raw: object) -> "MessageKind":
        if not isinstance(raw, str):
            raise ValueError("message type must be a string")
        # Нормализуем к дефисному стилю: "Call_Offer" -> "call-offer"
        norm = raw.strip().replace("_", "-").replace(" ", "").lower()
        norm = KIND_ALIASES.get(norm, norm)
        return MessageKind(norm)


# Legacy socket.io event names, still sent by older clients
KIND_ALIASES: dict[str, str] = {
    "get-online-users": "presence-query",
    "call-user": "call-offer",
    "answer-call": "call-answer",
    "reject-call": "call-reject",
    "icecandidate": "ice-candidate",
    "join-call": "join-invite",
    "accept-invite": "invite-accept",
    "reject-invite": "invite-reject",
    "new-participant-joined": "participant-joined",
    "dtmf-tone": "in-call-tone",
    "hangup": "leave-call",
}

# Kinds accepted before login
UNAUTHENTICATED_KINDS = frozenset({MessageKind.login, MessageKind.presence_query, MessageKind.ping})
