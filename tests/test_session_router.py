import asyncio
import uuid

import pytest

from callrelay.application.use_cases.signaling import SessionRouter
from callrelay.core.services.calls import CallSessionTracker
from callrelay.core.services.presence import PresenceRegistry


def offer(to, **extra):
    return {"type": "call-offer", "destinationIdentity": to, "offer": {"sdp": "v=0", "type": "offer"}, **extra}


def answer(to):
    return {"type": "call-answer", "destinationIdentity": to, "answer": {"sdp": "v=0", "type": "answer"}}


def ice(to):
    return {"type": "ice-candidate", "destinationIdentity": to, "candidate": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"}}


@pytest.mark.asyncio
async def test_login_broadcasts_user_joined_and_roster(relay, make_conn):
    alice = make_conn("alice")
    await relay.handle(alice, {"type": "login", "identity": "alice"})
    assert alice.of_type("online-users") == [{"type": "online-users", "users": ["alice"]}]

    bob = make_conn("bob")
    await relay.handle(bob, {"type": "login", "username": "bob"})
    assert {"type": "user-joined", "identity": "bob"} in alice.sent
    assert alice.sent[-1] == {"type": "online-users", "users": ["alice", "bob"]}
    assert bob.of_type("online-users")[-1]["users"] == ["alice", "bob"]
    # О себе user-joined не получаем
    assert bob.of_type("user-joined") == []


@pytest.mark.asyncio
async def test_login_delivers_ice_config(make_conn, ice_provider):
    relay = SessionRouter(PresenceRegistry(), CallSessionTracker(), ice_provider=ice_provider)
    alice = make_conn("alice")
    await relay.handle(alice, {"type": "login", "identity": "alice"})
    assert alice.sent[-1] == {"type": "ice-servers", "iceServers": [{"urls": ["stun:stun.example.org:3478"]}]}
    assert ice_provider.calls == ["alice"]


@pytest.mark.asyncio
async def test_invalid_login_is_reported(relay, make_conn):
    conn = make_conn("c")
    await relay.handle(conn, {"type": "login", "identity": "  "})
    assert conn.sent == [{"type": "error", "code": "invalid-identity", "message": "Identity must not be empty", "kind": "login"}]
    assert relay.roster() == []


@pytest.mark.asyncio
async def test_presence_query_and_ping_before_login(relay, login, make_conn):
    await login("alice")
    anon = make_conn("anon")
    await relay.handle(anon, {"type": "get-online-users"})
    await relay.handle(anon, {"type": "ping"})
    assert anon.sent == [{"type": "online-users", "users": ["alice"]}, {"type": "pong"}]


@pytest.mark.asyncio
async def test_forwarding_requires_login(relay, login, make_conn):
    await login("bob")
    anon = make_conn("anon")
    await relay.handle(anon, offer("bob"))
    assert anon.sent[-1]["code"] == "not-authenticated"
    assert relay.calls() == []


@pytest.mark.asyncio
async def test_malformed_messages(relay, login):
    alice = await login("alice")
    await relay.handle(alice, "not json")
    await relay.handle(alice, {"type": "teleport"})
    await relay.handle(alice, {"type": "call-offer", "destinationIdentity": "bob"})
    await relay.handle(alice, {"type": "in-call-tone", "destinationIdentity": "bob", "digit": "E"})
    await relay.handle(alice, {"offer": {}})
    errors = alice.of_type("error")
    assert [e["code"] for e in errors] == ["malformed-message"] * 5
    assert errors[0]["kind"] is None
    assert errors[1]["kind"] == "teleport"
    assert "offer" in errors[2]["message"]


@pytest.mark.asyncio
async def test_offer_to_offline_identity(relay, login):
    alice = await login("alice")
    await relay.handle(alice, offer("ghost"))
    assert alice.sent == [
        {"type": "error", "code": "recipient-offline", "message": "ghost is offline", "kind": "call-offer"}
    ]
    assert relay.calls() == []


@pytest.mark.asyncio
async def test_offer_answer_flow(relay, login):
    alice = await login("alice")
    bob = await login("bob")

    await relay.handle(alice, offer("bob"))
    incoming = bob.of_type("incoming-call")[0]
    assert incoming["fromIdentity"] == "alice"
    assert incoming["offer"]["type"] == "offer"
    call_id = incoming["callId"]
    assert relay.calls()[0]["state"] == "ringing"

    await relay.handle(bob, ice("alice"))
    assert alice.of_type("ice-candidate")[0]["fromIdentity"] == "bob"

    await relay.handle(bob, answer("alice"))
    answered = alice.of_type("call-answered")[0]
    assert answered["callId"] == call_id
    assert answered["answer"]["type"] == "answer"
    assert relay.call(uuid.UUID(call_id))["state"] == "connected"


@pytest.mark.asyncio
async def test_sender_identity_cannot_be_spoofed(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, offer("bob", fromIdentity="mallory", fromUserId="mallory"))
    assert bob.of_type("incoming-call")[0]["fromIdentity"] == "alice"
    await relay.handle(alice, {"type": "in-call-tone", "destinationIdentity": "bob", "digit": "#", "fromIdentity": "mallory"})
    assert bob.sent[-1] == {"type": "in-call-tone", "fromIdentity": "alice", "digit": "#"}


@pytest.mark.asyncio
async def test_busy_callee(relay, login):
    alice = await login("alice")
    await login("bob")
    carol = await login("carol")
    await relay.handle(alice, offer("bob"))
    await relay.handle(carol, offer("bob"))
    assert carol.sent[-1]["code"] == "already-in-call"


@pytest.mark.asyncio
async def test_rejected_call_cannot_be_answered(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, offer("bob"))
    await relay.handle(bob, {"type": "reject-call", "toUserId": "alice"})
    assert alice.of_type("call-rejected")[0]["fromIdentity"] == "bob"
    assert relay.calls() == []

    await relay.handle(bob, answer("alice"))
    assert bob.sent[-1]["code"] == "session-not-found"
    assert alice.of_type("call-answered") == []


@pytest.mark.asyncio
async def test_ice_to_party_that_left_is_dropped(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, offer("bob"))
    await relay.handle(bob, answer("alice"))

    await relay.handle(bob, {"type": "leave-call"})
    assert alice.of_type("participant-left")[0]["leavingIdentity"] == "bob"
    bob.sent.clear()

    await relay.handle(alice, ice("bob"))
    assert bob.sent == []
    assert alice.of_type("error") == []


@pytest.mark.asyncio
async def test_conference_invite_accept_notifies_other_members(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    carol = await login("carol")
    await relay.handle(alice, offer("bob"))
    await relay.handle(bob, answer("alice"))

    await relay.handle(alice, {"type": "join-call", "joiningUserId": "carol"})
    invite = carol.of_type("incoming-invite")[0]
    assert invite["fromIdentity"] == "alice"

    await relay.handle(carol, {"type": "accept-invite", "fromUserId": "alice"})
    assert alice.of_type("invite-accepted")[0]["fromIdentity"] == "carol"
    for member in (alice, bob):
        joined = member.of_type("new-participant-joined")
        assert joined == [
            {"type": "new-participant-joined", "fromIdentity": "carol", "callId": invite["callId"], "newParticipant": "carol"}
        ]
    assert carol.of_type("new-participant-joined") == []
    assert relay.calls()[0]["participants"] == ["alice", "bob", "carol"]
    assert relay.calls()[0]["kind"] == "conference"


@pytest.mark.asyncio
async def test_invite_reject_and_duplicate(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "bob"})
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "bob"})
    assert alice.sent[-1]["code"] == "duplicate-invite"

    await relay.handle(bob, {"type": "invite-reject", "inviterIdentity": "alice"})
    assert alice.of_type("invite-rejected")[0]["fromIdentity"] == "bob"
    assert relay.calls() == []

    await relay.handle(bob, {"type": "invite-accept", "inviterIdentity": "alice"})
    assert bob.sent[-1]["code"] == "session-not-found"


@pytest.mark.asyncio
async def test_participant_left_self_report_leaves_call(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    carol = await login("carol")
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "bob"})
    await relay.handle(bob, {"type": "invite-accept", "inviterIdentity": "alice"})
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "carol"})
    await relay.handle(carol, {"type": "invite-accept", "inviterIdentity": "alice"})

    await relay.handle(carol, {"type": "participant-left", "destinationIdentity": "alice", "leavingUserId": "carol"})
    for member in (alice, bob):
        assert member.of_type("participant-left")[-1]["leavingIdentity"] == "carol"
    assert relay.calls()[0]["participants"] == ["alice", "bob"]

    # carol уже не в звонке: сообщение идёт по обычной пересылке, адресат офлайн
    await relay.handle(carol, {"type": "participant-left", "destinationIdentity": "dave", "leavingIdentity": "carol"})
    assert carol.sent[-1]["code"] == "recipient-offline"


@pytest.mark.asyncio
async def test_participant_joined_dropped_when_destination_idle(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    alice.sent.clear()
    await relay.handle(alice, {"type": "participant-joined", "destinationIdentity": "bob", "newParticipant": "carol"})
    assert bob.sent == []
    assert alice.sent == []


@pytest.mark.asyncio
async def test_disconnect_mid_call_cleans_up(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, offer("bob"))
    await relay.handle(bob, answer("alice"))

    assert await relay.disconnect(bob) == "bob"
    assert alice.of_type("participant-left")[0]["leavingIdentity"] == "bob"
    assert {"type": "user-left", "identity": "bob"} in alice.sent
    assert alice.sent[-1] == {"type": "online-users", "users": ["alice"]}
    assert relay.roster() == ["alice"]
    assert relay.calls() == []

    bob2 = await login("bob")
    await relay.handle(alice, offer("bob"))
    assert bob2.of_type("incoming-call")
    assert relay.calls()[0]["state"] == "ringing"
    # Повторный disconnect ничего не делает
    assert await relay.disconnect(bob) is None


@pytest.mark.asyncio
async def test_disconnect_rejects_pending_invite(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "bob"})
    await relay.disconnect(bob)
    assert alice.of_type("invite-rejected")[0]["fromIdentity"] == "bob"
    assert relay.calls() == []


@pytest.mark.asyncio
async def test_leaving_inviter_cancels_invites(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    carol = await login("carol")
    await relay.handle(alice, offer("bob"))
    await relay.handle(bob, answer("alice"))
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "carol"})

    await relay.handle(alice, {"type": "hangup"})
    assert carol.of_type("invite-cancelled")[0]["fromIdentity"] == "alice"
    assert bob.of_type("participant-left")[0]["leavingIdentity"] == "alice"
    assert relay.calls() == []


@pytest.mark.asyncio
async def test_logout_keeps_connection_usable(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, {"type": "logout"})
    assert alice.sent[-1] == {"type": "logged-out", "identity": "alice"}
    assert bob.sent[-1] == {"type": "online-users", "users": ["bob"]}

    await relay.handle(alice, offer("bob"))
    assert alice.sent[-1]["code"] == "not-authenticated"
    await relay.handle(alice, {"type": "login", "identity": "alice"})
    assert relay.roster() == ["alice", "bob"]


@pytest.mark.asyncio
async def test_superseded_login_is_evicted_when_enabled(make_conn, login):
    relay = SessionRouter(PresenceRegistry(), CallSessionTracker(), evict_superseded=True)
    old = await login("alice", relay)
    new = await login("alice", relay)
    assert old.closed == (4000, "Superseded by a newer login")
    assert new.closed is None
    assert relay.roster() == ["alice"]
    # disconnect старого сокета не трогает новый логин
    assert await relay.disconnect(old) is None
    assert relay.roster() == ["alice"]


@pytest.mark.asyncio
async def test_tracking_disabled_forwards_statelessly(make_conn, login):
    relay = SessionRouter(PresenceRegistry(), None)
    alice = await login("alice", relay)
    bob = await login("bob", relay)
    await relay.handle(bob, answer("alice"))
    assert alice.of_type("call-answered") == [
        {"type": "call-answered", "fromIdentity": "bob", "answer": {"sdp": "v=0", "type": "answer"}}
    ]
    await relay.handle(bob, ice("alice"))
    assert alice.of_type("ice-candidate")
    assert relay.calls() == []
    await relay.handle(alice, offer("ghost"))
    assert alice.sent[-1]["code"] == "recipient-offline"


@pytest.mark.asyncio
async def test_legacy_aliases(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    await relay.handle(alice, {"type": "call-user", "toUserId": "bob", "offer": {"sdp": "x"}})
    await relay.handle(bob, {"type": "answer-call", "toUserId": "alice", "answer": {"sdp": "y"}})
    await relay.handle(bob, {"type": "dtmf-tone", "toUserId": "alice", "digit": "5"})
    assert bob.of_type("incoming-call")
    assert alice.of_type("call-answered")
    assert alice.sent[-1] == {"type": "in-call-tone", "fromIdentity": "bob", "digit": "5"}


@pytest.mark.asyncio
async def test_disconnect_completes_when_caller_is_cancelled(relay, login, make_conn):
    class SlowConnection(make_conn):
        async def send(self, payload):
            await asyncio.sleep(0.01)
            await super().send(payload)

    alice = SlowConnection("alice")
    await relay.handle(alice, {"type": "login", "identity": "alice"})
    bob = await login("bob")
    await relay.handle(alice, offer("bob"))
    await relay.handle(bob, answer("alice"))
    alice.sent.clear()

    # транспорт гасит свою задачу посреди рассылки
    task = asyncio.ensure_future(relay.disconnect(bob))
    await asyncio.sleep(0.005)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    # ping встаёт в очередь за очисткой и выполняется после неё
    await relay.handle(alice, {"type": "ping"})
    assert alice.types() == ["participant-left", "user-left", "online-users", "pong"]
    assert alice.sent[2] == {"type": "online-users", "users": ["alice"]}
    assert relay.roster() == ["alice"]
    assert relay.calls() == []


@pytest.mark.asyncio
async def test_callee_can_decline_after_call_became_conference(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    carol = await login("carol")
    await relay.handle(alice, offer("bob"))
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "carol"})
    await relay.handle(carol, {"type": "invite-accept", "inviterIdentity": "alice"})
    assert relay.calls()[0]["state"] == "connected"

    await relay.handle(bob, {"type": "call-reject", "destinationIdentity": "alice"})
    assert bob.of_type("error") == []
    assert alice.of_type("call-rejected")[0]["fromIdentity"] == "bob"
    assert carol.of_type("participant-left")[0]["leavingIdentity"] == "bob"
    (call,) = relay.calls()
    assert call["participants"] == ["alice", "carol"]
    assert call["state"] == "connected"


@pytest.mark.asyncio
async def test_repeated_self_reported_leave_is_not_duplicated(relay, login):
    alice = await login("alice")
    bob = await login("bob")
    carol = await login("carol")
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "bob"})
    await relay.handle(bob, {"type": "invite-accept", "inviterIdentity": "alice"})
    await relay.handle(alice, {"type": "join-invite", "inviteeIdentity": "carol"})
    await relay.handle(carol, {"type": "invite-accept", "inviterIdentity": "alice"})

    # старые клиенты шлют participant-left каждому участнику по отдельности
    for peer in ("alice", "bob"):
        await relay.handle(carol, {"type": "participant-left", "destinationIdentity": peer, "leavingIdentity": "carol"})
    assert len(alice.of_type("participant-left")) == 1
    assert len(bob.of_type("participant-left")) == 1
    assert carol.of_type("error") == []


@pytest.mark.asyncio
async def test_identity_length_follows_registry_limit(login):
    relay = SessionRouter(PresenceRegistry(max_identity_length=300), CallSessionTracker())
    long_name = "u" * 200
    alice = await login("alice", relay)
    peer = await login(long_name, relay)
    await relay.handle(alice, offer(long_name))
    assert alice.of_type("error") == []
    assert peer.of_type("incoming-call")[0]["fromIdentity"] == "alice"
