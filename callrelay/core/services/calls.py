from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from ..domain.models import (
    CallKind,
    CallSession,
    CallState,
    Departure,
    Invite,
    InviteState,
    LeaveResult,
)
from ..errors import AlreadyInCall, DuplicateInvite, MalformedMessage, SessionNotFound

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallPolicy:
    # False: an identity is a joined member of at most one active session
    allow_concurrent_calls: bool = False


class CallSessionTracker:
    """Membership state of every active call and conference.

    Lifecycle: ``ringing -> connected -> terminated``; invitees run
    ``invited -> accepted | rejected | expired`` inside their session. Terminated
    sessions are evicted right away and never revived: a new call between the
    same identities gets a new id.

    A session with fewer than two joined participants and no pending invite has
    nobody left to talk to and is terminated.
    """

    def __init__(self, policy: CallPolicy | None = None) -> None:
        self.policy = policy or CallPolicy()
        self._sessions: Dict[UUID, CallSession] = {}
        self._by_identity: Dict[str, Set[UUID]] = defaultdict(set)

    # --- lookups ---

    def get(self, session_id: UUID) -> CallSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Call {session_id} not found")
        return session

    def sessions_of(self, identity: str) -> List[CallSession]:
        ids = self._by_identity.get(identity, set())
        sessions = [self._sessions[sid] for sid in ids if sid in self._sessions]
        return sorted(sessions, key=lambda s: s.created_at)

    def current_session(self, identity: str) -> Optional[CallSession]:
        sessions = self.sessions_of(identity)
        return sessions[-1] if sessions else None

    def shared_session(self, a: str, b: str) -> Optional[CallSession]:
        common = self._by_identity.get(a, set()) & self._by_identity.get(b, set())
        sessions = [self._sessions[sid] for sid in common if sid in self._sessions]
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.created_at)

    def find_invite(self, invitee: str, inviter: str) -> Tuple[CallSession, Invite]:
        for session in self._sessions.values():
            invite = session.pending_invites.get(invitee)
            if invite is not None and invite.inviter == inviter:
                return session, invite
        raise SessionNotFound(f"No pending invite from {inviter}")

    def active_sessions(self) -> List[CallSession]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def pending_invite_count(self) -> int:
        return sum(len(s.pending_invites) for s in self._sessions.values())

    # --- 1:1 calls ---

    def begin_call(self, caller: str, callee: str) -> CallSession:
        if caller == callee:
            raise MalformedMessage("Cannot call yourself")
        self._ensure_free(caller)
        self._ensure_free(callee)
        session = CallSession.direct(caller, callee)
        self._add(session)
        logger.info("CALL_BEGIN call=%s caller=%s callee=%s", session.id, caller, callee)
        return session

    def accept_call(self, session: CallSession, by: str | None = None) -> None:
        self._require_active(session)
        if session.state is CallState.ringing:
            if session.kind is CallKind.direct and by is not None and by != session.callee:
                raise SessionNotFound(f"No incoming call for {by} to answer")
            session.state = CallState.connected
            logger.info("CALL_CONNECTED call=%s", session.id)
        if session.callee is not None and by in (None, session.callee):
            session.answered = True

    def reject_call(self, session: CallSession, by: str | None = None) -> Optional[LeaveResult]:
        """Decline a call.

        A ringing call is terminated. If the call became a conference before
        its callee answered (an invite was accepted meanwhile), the callee's
        decline only takes them out of it; the returned ``LeaveResult`` says
        who is still there.
        """
        self._require_active(session)
        if session.state is CallState.ringing:
            self._terminate(session, "rejected")
            return None
        if by is not None and by == session.callee and not session.answered:
            logger.info("CALL_DECLINE call=%s callee=%s", session.id, by)
            return self.leave(session, by)
        raise SessionNotFound("No ringing call to reject")

    def terminate_call(self, session: CallSession) -> None:
        self._require_active(session)
        self._terminate(session, "terminated")

    def expire_ringing(self, session_id: UUID) -> Optional[CallSession]:
        """Timeout hook: terminate a 1:1 call that is still ringing."""
        session = self._sessions.get(session_id)
        if session is None or session.state is not CallState.ringing or session.kind is not CallKind.direct:
            return None
        self._terminate(session, "timeout")
        return session

    # --- conferences ---

    def open_conference(self, host: str) -> CallSession:
        self._ensure_free(host)
        session = CallSession.conference(host)
        self._add(session)
        logger.info("CONFERENCE_OPEN call=%s host=%s", session.id, host)
        return session

    def invite(self, session: CallSession | None, inviter: str, invitee: str) -> Tuple[CallSession, Invite]:
        """Add a pending invite; opens a conference when ``session`` is None."""
        if invitee == inviter:
            raise DuplicateInvite("Cannot invite yourself")
        if session is None:
            session = self.open_conference(inviter)
        else:
            self._require_active(session)
            if inviter not in session.participants:
                raise SessionNotFound(f"{inviter} is not part of call {session.id}")
            if invitee in session.participants or invitee in session.pending_invites:
                raise DuplicateInvite(f"{invitee} is already invited or joined")
        invite = Invite.create(inviter, invitee)
        session.pending_invites[invitee] = invite
        logger.info("INVITE call=%s inviter=%s invitee=%s", session.id, inviter, invitee)
        return session, invite

    def accept_invite(self, session: CallSession, invitee: str) -> List[str]:
        """Join ``invitee``; returns the other joined participants to notify."""
        self._require_active(session)
        invite = session.pending_invites.get(invitee)
        if invite is None:
            raise SessionNotFound(f"No pending invite for {invitee}")
        self._ensure_free(invitee, exclude=session)
        del session.pending_invites[invitee]
        invite.state = InviteState.accepted
        others = session.others(invitee)
        session.participants.add(invitee)
        self._by_identity[invitee].add(session.id)
        if len(session.participants) > 2:
            session.kind = CallKind.conference
        if session.state is CallState.ringing:
            session.state = CallState.connected
        logger.info("INVITE_ACCEPT call=%s invitee=%s members=%s", session.id, invitee, len(session.participants))
        return others

    def reject_invite(self, session: CallSession, invitee: str) -> str:
        """Drop the pending invite; returns the inviter (the only one notified)."""
        self._require_active(session)
        invite = session.pending_invites.pop(invitee, None)
        if invite is None:
            raise SessionNotFound(f"No pending invite for {invitee}")
        invite.state = InviteState.rejected
        logger.info("INVITE_REJECT call=%s invitee=%s", session.id, invitee)
        self._collapse_if_idle(session)
        return invite.inviter

    def expire_invite(self, session_id: UUID, invite_id: UUID) -> Optional[Tuple[CallSession, Invite]]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        for invitee, invite in list(session.pending_invites.items()):
            if invite.id == invite_id:
                del session.pending_invites[invitee]
                invite.state = InviteState.expired
                self._collapse_if_idle(session)
                return session, invite
        return None

    # --- departures ---

    def leave(self, session: CallSession, identity: str) -> LeaveResult:
        self._require_active(session)
        if identity not in session.participants:
            raise SessionNotFound(f"{identity} is not part of call {session.id}")
        session.participants.discard(identity)
        self._unindex(identity, session.id)
        withdrawn = [inv for inv in session.pending_invites.values() if inv.inviter == identity]
        for inv in withdrawn:
            del session.pending_invites[inv.invitee]
            inv.state = InviteState.expired
        remaining = sorted(session.participants)
        terminated = self._collapse_if_idle(session)
        logger.info("CALL_LEAVE call=%s identity=%s remaining=%s terminated=%s", session.id, identity, len(remaining), terminated)
        return LeaveResult(session=session, identity=identity, remaining=remaining, terminated=terminated, withdrawn=withdrawn)

    def drop_identity(self, identity: str) -> List[Departure]:
        """Resolve everything ``identity`` was part of (disconnect / logout)."""
        departures: List[Departure] = []
        for session in self.active_sessions():
            departure = Departure(session=session)
            invite = session.pending_invites.pop(identity, None)
            if invite is not None:
                invite.state = InviteState.rejected
                departure.rejected_invites.append(invite)
            if identity in session.participants:
                departure.left = self.leave(session, identity)
            elif invite is not None:
                self._collapse_if_idle(session)
            if departure.left is not None or departure.rejected_invites:
                departures.append(departure)
        return departures

    # --- internals ---

    def _add(self, session: CallSession) -> None:
        self._sessions[session.id] = session
        for p in session.participants:
            self._by_identity[p].add(session.id)

    def _unindex(self, identity: str, session_id: UUID) -> None:
        ids = self._by_identity.get(identity)
        if ids is not None:
            ids.discard(session_id)
            if not ids:
                self._by_identity.pop(identity, None)

    def _require_active(self, session: CallSession) -> None:
        if not session.active or session.id not in self._sessions:
            raise SessionNotFound(f"Call {session.id} is not active")

    def _ensure_free(self, identity: str, exclude: CallSession | None = None) -> None:
        if self.policy.allow_concurrent_calls:
            return
        if any(s is not exclude for s in self.sessions_of(identity)):
            raise AlreadyInCall(f"{identity} is already in a call")

    def _collapse_if_idle(self, session: CallSession) -> bool:
        if session.active and len(session.participants) < 2 and not session.pending_invites:
            self._terminate(session, "idle")
            return True
        return not session.active

    def _terminate(self, session: CallSession, reason: str) -> None:
        session.state = CallState.terminated
        for p in session.participants:
            self._unindex(p, session.id)
        self._sessions.pop(session.id, None)
        logger.info("CALL_END call=%s reason=%s", session.id, reason)
