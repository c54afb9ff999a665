from __future__ import annotations

"""Session router: validates every inbound signaling message and routes it.

Поток: transport -> router (валидация + классификация) -> presence (адресат)
-> call tracker (проверка/обновление состояния) -> transport (доставка).

The presence registry and the call tracker are mutated only here, and only
under ``self._lock``: one event (login, offer, disconnect, timer expiry) is
handled to completion, sends included, before the next one starts.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set
from uuid import UUID

from ...core.domain.models import UNAUTHENTICATED_KINDS, CallSession, Departure, LeaveResult, MessageKind
from ...core.domain.values import UserIdentity
from ...core.errors import DomainError, MalformedMessage, NotAuthenticated, RecipientOffline, SessionNotFound
from ...core.ports.services import Connection, IceConfigProvider
from ...core.services.calls import CallSessionTracker
from ...core.services.presence import PresenceRegistry
from ...infrastructure import metrics
from ..dto.signaling import (
    CallAnswerMessage,
    CallOfferMessage,
    CallRejectMessage,
    IceCandidateMessage,
    InCallToneMessage,
    InboundMessage,
    InviteReplyMessage,
    JoinInviteMessage,
    LeaveCallMessage,
    LoginMessage,
    ParticipantJoinedMessage,
    ParticipantLeftMessage,
    parse_message,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Optional[str], Any], Awaitable[None]]

EVICTED_CLOSE_CODE = 4000


def error_event(exc: DomainError, kind: Any = None) -> dict[str, Any]:
    return {"type": "error", "code": exc.code, "message": str(exc), "kind": kind}


class SessionRouter:
    """Owns the presence registry and (optionally) the call session tracker.

    ``tracker=None`` turns session tracking off: every forwarding message then
    only goes through shape / login / presence checks.
    """

    def __init__(
        self,
        presence: PresenceRegistry | None = None,
        tracker: CallSessionTracker | None = None,
        *,
        ice_provider: IceConfigProvider | None = None,
        ring_timeout: float = 0.0,
        evict_superseded: bool = False,
    ) -> None:
        self.presence = presence or PresenceRegistry()
        self.tracker = tracker
        self.ice_provider = ice_provider
        self.ring_timeout = ring_timeout
        self.evict_superseded = evict_superseded
        self._lock = asyncio.Lock()
        self._timers: Set[asyncio.Task] = set()
        self._handlers: Dict[MessageKind, Handler] = {
            MessageKind.login: self._on_login,
            MessageKind.logout: self._on_logout,
            MessageKind.presence_query: self._on_presence_query,
            MessageKind.ping: self._on_ping,
            MessageKind.call_offer: self._on_call_offer,
            MessageKind.call_answer: self._on_call_answer,
            MessageKind.call_reject: self._on_call_reject,
            MessageKind.ice_candidate: self._on_ice_candidate,
            MessageKind.join_invite: self._on_join_invite,
            MessageKind.invite_accept: self._on_invite_accept,
            MessageKind.invite_reject: self._on_invite_reject,
            MessageKind.participant_joined: self._on_participant_joined,
            MessageKind.participant_left: self._on_participant_left,
            MessageKind.in_call_tone: self._on_in_call_tone,
            MessageKind.leave_call: self._on_leave_call,
        }

    # === transport events ===

    async def handle(self, connection: Connection, data: Any) -> None:
        """Process one inbound frame. Domain errors go back to the sender only."""
        raw_kind = data.get("type") if isinstance(data, dict) else None
        async with self._lock:
            try:
                if not isinstance(data, dict):
                    raise MalformedMessage("Message must be a JSON object")
                try:
                    kind = MessageKind.parse(raw_kind)
                except ValueError:
                    raise MalformedMessage(f"Unknown message type {raw_kind!r}") from None
                message = parse_message(kind, data)
                sender = self.presence.identity_of(connection)
                if sender is None and kind not in UNAUTHENTICATED_KINDS:
                    raise NotAuthenticated("Login required")
                metrics.SIGNAL_EVENTS.labels(kind.value).inc()
                await self._handlers[kind](connection, sender, message)
            except DomainError as exc:
                metrics.SIGNAL_ERRORS.labels(exc.code).inc()
                logger.info("SIGNAL_ERROR conn=%s kind=%s code=%s err=%s", connection.label, raw_kind, exc.code, exc)
                await connection.send(error_event(exc, raw_kind))
            except Exception:
                # Не роняем соединение из-за одного сообщения
                metrics.SIGNAL_ERRORS.labels("internal-error").inc()
                logger.exception("SIGNAL_FAIL conn=%s kind=%s", connection.label, raw_kind)
                await connection.send({"type": "error", "code": "internal-error", "message": "Internal error", "kind": raw_kind})
            finally:
                self._refresh_gauges()

    async def disconnect(self, connection: Connection) -> Optional[str]:
        """Transport lost the connection: unregister and resolve its sessions.

        Cleanup runs in its own task: cancelling the caller (a transport task
        being torn down) does not cut the user-left / roster fan-out short.
        """
        return await asyncio.shield(asyncio.ensure_future(self._disconnect(connection)))

    async def _disconnect(self, connection: Connection) -> Optional[str]:
        async with self._lock:
            identity = await self._drop(connection)
            self._refresh_gauges()
        logger.info("DISCONNECT conn=%s identity=%s", connection.label, identity)
        return identity

    async def shutdown(self) -> None:
        timers = list(self._timers)
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    # === snapshots ===

    def roster(self) -> list[str]:
        return self.presence.list_identities()

    def calls(self) -> list[dict[str, Any]]:
        if self.tracker is None:
            return []
        return [s.snapshot() for s in self.tracker.active_sessions()]

    def call(self, call_id: UUID) -> dict[str, Any]:
        if self.tracker is None:
            raise SessionNotFound("Session tracking is disabled")
        return self.tracker.get(call_id).snapshot()

    # === presence ===

    async def _on_login(self, connection: Connection, sender: Optional[str], msg: LoginMessage) -> None:
        identity = UserIdentity(msg.identity, self.presence.max_identity_length).value
        if sender is not None and sender != identity:
            # Соединение не может владеть двумя identity: старую отпускаем как при logout
            await self._drop(connection)
        superseded = self.presence.register(identity, connection)
        logger.info("LOGIN identity=%s conn=%s superseded=%s", identity, connection.label, superseded.label if superseded else None)
        if superseded is not None and self.evict_superseded:
            await superseded.close(code=EVICTED_CLOSE_CODE, reason="Superseded by a newer login")
        if sender != identity:
            for conn in self.presence.connections():
                if conn is not connection:
                    await conn.send({"type": "user-joined", "identity": identity})
        await self._broadcast_roster()
        if self.ice_provider is not None:
            config = await self.ice_provider.get_servers(identity)
            await connection.send({"type": "ice-servers", **config})

    async def _on_logout(self, connection: Connection, sender: Optional[str], msg: InboundMessage) -> None:
        identity = await self._drop(connection)
        await connection.send({"type": "logged-out", "identity": identity})

    async def _on_presence_query(self, connection: Connection, sender: Optional[str], msg: InboundMessage) -> None:
        await connection.send({"type": "online-users", "users": self.presence.list_identities()})

    async def _on_ping(self, connection: Connection, sender: Optional[str], msg: InboundMessage) -> None:
        await connection.send({"type": "pong"})

    async def _drop(self, connection: Connection) -> Optional[str]:
        identity = self.presence.unregister(connection)
        if identity is None:
            return None
        if self.tracker is not None:
            for departure in self.tracker.drop_identity(identity):
                await self._announce_departure(identity, departure)
        for conn in self.presence.connections():
            await conn.send({"type": "user-left", "identity": identity})
        await self._broadcast_roster()
        return identity

    async def _broadcast_roster(self) -> None:
        payload = {"type": "online-users", "users": self.presence.list_identities()}
        for conn in self.presence.connections():
            await conn.send(payload)

    # === 1:1 calls ===

    async def _on_call_offer(self, connection: Connection, sender: str, msg: CallOfferMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        session = None
        if self.tracker is not None:
            session = self.tracker.shared_session(sender, msg.destination_identity)
            if session is None:
                session = self.tracker.begin_call(sender, msg.destination_identity)
                self._arm_ring_timer(session)
        await dest.send(self._event("incoming-call", sender, session, offer=msg.offer))

    async def _on_call_answer(self, connection: Connection, sender: str, msg: CallAnswerMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        session = None
        if self.tracker is not None:
            session = self._shared_or_fail(sender, msg.destination_identity)
            self.tracker.accept_call(session, by=sender)
        await dest.send(self._event("call-answered", sender, session, answer=msg.answer))

    async def _on_call_reject(self, connection: Connection, sender: str, msg: CallRejectMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        session = None
        left: Optional[LeaveResult] = None
        if self.tracker is not None:
            session = self._shared_or_fail(sender, msg.destination_identity)
            left = self.tracker.reject_call(session, by=sender)
        await dest.send(self._event("call-rejected", sender, session))
        if left is not None:
            # звонок уже стал конференцией: остальные видят уход отказавшегося
            await self._announce_leave(left)

    async def _on_ice_candidate(self, connection: Connection, sender: str, msg: IceCandidateMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        if self.tracker is not None and self.tracker.shared_session(sender, msg.destination_identity) is None:
            logger.debug("ICE_DROP from=%s to=%s: no shared call", sender, msg.destination_identity)
            return
        await dest.send({"type": "ice-candidate", "fromIdentity": sender, "candidate": msg.candidate})

    # === conferences ===

    async def _on_join_invite(self, connection: Connection, sender: str, msg: JoinInviteMessage) -> None:
        dest = self._resolve(msg.invitee_identity)
        session = None
        if self.tracker is not None:
            if msg.call_id is not None:
                current: Optional[CallSession] = self.tracker.get(msg.call_id)
            else:
                current = self.tracker.current_session(sender)
            session, invite = self.tracker.invite(current, sender, msg.invitee_identity)
            self._arm_invite_timer(session, invite.id)
        await dest.send(self._event("incoming-invite", sender, session))

    async def _on_invite_accept(self, connection: Connection, sender: str, msg: InviteReplyMessage) -> None:
        dest = self._resolve(msg.inviter_identity)
        session = None
        others: list[str] = []
        if self.tracker is not None:
            session, _ = self.tracker.find_invite(sender, msg.inviter_identity)
            others = self.tracker.accept_invite(session, sender)
        await dest.send(self._event("invite-accepted", sender, session))
        for member in others:
            await self._emit(member, self._event("new-participant-joined", sender, session, newParticipant=sender))

    async def _on_invite_reject(self, connection: Connection, sender: str, msg: InviteReplyMessage) -> None:
        dest = self._resolve(msg.inviter_identity)
        session = None
        if self.tracker is not None:
            session, _ = self.tracker.find_invite(sender, msg.inviter_identity)
            self.tracker.reject_invite(session, sender)
        await dest.send(self._event("invite-rejected", sender, session))

    async def _on_participant_joined(self, connection: Connection, sender: str, msg: ParticipantJoinedMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        if self.tracker is not None and not self.tracker.sessions_of(msg.destination_identity):
            logger.debug("JOINED_DROP from=%s to=%s: destination not in a call", sender, msg.destination_identity)
            return
        await dest.send({"type": "new-participant-joined", "fromIdentity": sender, "newParticipant": msg.new_participant})

    async def _on_participant_left(self, connection: Connection, sender: str, msg: ParticipantLeftMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        if self.tracker is not None:
            session = self.tracker.shared_session(sender, msg.destination_identity)
            if session is not None and msg.leaving_identity == sender:
                # Клиент сообщает о своём уходе: уходим из звонка, оповещаем всех оставшихся
                await self._announce_leave(self.tracker.leave(session, sender))
                return
            if msg.leaving_identity == sender:
                # уход уже обработан (или звонка не было): повторные кадры не дублируем
                logger.debug("LEFT_DROP from=%s to=%s: no shared call", sender, msg.destination_identity)
                return
            if not self.tracker.sessions_of(msg.destination_identity):
                logger.debug("LEFT_DROP from=%s to=%s: destination not in a call", sender, msg.destination_identity)
                return
        await dest.send({"type": "participant-left", "fromIdentity": sender, "leavingIdentity": msg.leaving_identity})

    async def _on_leave_call(self, connection: Connection, sender: str, msg: LeaveCallMessage) -> None:
        if self.tracker is None:
            return
        if msg.call_id is not None:
            session = self.tracker.get(msg.call_id)
            if sender not in session.participants:
                raise SessionNotFound(f"{sender} is not part of call {session.id}")
            sessions = [session]
        else:
            sessions = self.tracker.sessions_of(sender)
            if not sessions:
                raise SessionNotFound("Not in a call")
        for session in sessions:
            await self._announce_leave(self.tracker.leave(session, sender))

    # === in-call control ===

    async def _on_in_call_tone(self, connection: Connection, sender: str, msg: InCallToneMessage) -> None:
        dest = self._resolve(msg.destination_identity)
        await dest.send({"type": "in-call-tone", "fromIdentity": sender, "digit": msg.digit})

    # === helpers ===

    def _resolve(self, identity: str) -> Connection:
        conn = self.presence.resolve(identity)
        if conn is None:
            raise RecipientOffline(f"{identity} is offline")
        return conn

    def _shared_or_fail(self, sender: str, other: str) -> CallSession:
        if self.tracker is None:
            raise SessionNotFound("Session tracking is disabled")
        session = self.tracker.shared_session(sender, other)
        if session is None:
            raise SessionNotFound(f"No call with {other}")
        return session

    @staticmethod
    def _event(type_: str, sender: str, session: Optional[CallSession], **fields: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": type_, "fromIdentity": sender, **fields}
        if session is not None:
            payload["callId"] = str(session.id)
        return payload

    async def _emit(self, identity: str, payload: dict[str, Any]) -> bool:
        conn = self.presence.resolve(identity)
        if conn is None:
            return False
        await conn.send(payload)
        return True

    async def _announce_leave(self, result: LeaveResult) -> None:
        for member in result.remaining:
            await self._emit(
                member, self._event("participant-left", result.identity, result.session, leavingIdentity=result.identity)
            )
        for invite in result.withdrawn:
            await self._emit(invite.invitee, self._event("invite-cancelled", invite.inviter, result.session))

    async def _announce_departure(self, identity: str, departure: Departure) -> None:
        for invite in departure.rejected_invites:
            await self._emit(invite.inviter, self._event("invite-rejected", identity, departure.session))
        if departure.left is not None:
            await self._announce_leave(departure.left)

    def _refresh_gauges(self) -> None:
        metrics.PRESENCE_ONLINE.set(len(self.presence))
        if self.tracker is not None:
            metrics.ACTIVE_CALLS.set(len(self.tracker.active_sessions()))
            metrics.PENDING_INVITES.set(self.tracker.pending_invite_count())

    # === ring / invite timeout ===

    def _arm_ring_timer(self, session: CallSession) -> None:
        if self.ring_timeout > 0:
            self._spawn(self._expire_call(session))

    def _arm_invite_timer(self, session: CallSession, invite_id: Any) -> None:
        if self.ring_timeout > 0:
            self._spawn(self._expire_invite(session, invite_id))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _expire_call(self, session: CallSession) -> None:
        await asyncio.sleep(self.ring_timeout)
        async with self._lock:
            if self.tracker is None:
                return
            expired = self.tracker.expire_ringing(session.id)
            if expired is None:
                return
            logger.info("CALL_TIMEOUT call=%s caller=%s callee=%s", expired.id, expired.caller, expired.callee)
            if expired.caller and expired.callee:
                await self._emit(expired.caller, self._event("call-timeout", expired.callee, expired))
                await self._emit(expired.callee, self._event("call-timeout", expired.caller, expired))
            self._refresh_gauges()

    async def _expire_invite(self, session: CallSession, invite_id: Any) -> None:
        await asyncio.sleep(self.ring_timeout)
        async with self._lock:
            if self.tracker is None:
                return
            result = self.tracker.expire_invite(session.id, invite_id)
            if result is None:
                return
            expired_in, invite = result
            logger.info("INVITE_TIMEOUT call=%s inviter=%s invitee=%s", expired_in.id, invite.inviter, invite.invitee)
            await self._emit(invite.inviter, self._event("invite-timeout", invite.invitee, expired_in))
            await self._emit(invite.invitee, self._event("invite-timeout", invite.inviter, expired_in))
            self._refresh_gauges()
