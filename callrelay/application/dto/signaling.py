from __future__ import annotations

from typing import Annotated, Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StringConstraints, ValidationError, field_validator

from ...core.domain.models import MessageKind
from ...core.domain.values import is_dtmf_digit
from ...core.errors import MalformedMessage


# Длину ограничивает только UserIdentity при login (MAX_IDENTITY_LENGTH):
# адрес длиннее лимита просто не найдётся среди online
Identity = Annotated[str, StringConstraints(min_length=1)]


def _destination() -> Any:
    # destinationIdentity, старые клиенты шлют toUserId
    return Field(validation_alias=AliasChoices("destinationIdentity", "toUserId", "destination_identity"))


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class LoginMessage(InboundMessage):
    # Identity is validated by the registry (InvalidIdentity), not here
    identity: Any = Field(default=None, validation_alias=AliasChoices("identity", "username", "userId"))


class EmptyMessage(InboundMessage):
    pass


class LeaveCallMessage(InboundMessage):
    call_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("callId", "call_id"))


class _Payload(InboundMessage):
    @field_validator("*", mode="after")
    @classmethod
    def _not_blank(cls, v: Any) -> Any:
        if v is None or (isinstance(v, (str, dict, list)) and not v):
            raise ValueError("must not be empty")
        return v


class CallOfferMessage(_Payload):
    destination_identity: Identity = _destination()
    offer: Any


class CallAnswerMessage(_Payload):
    destination_identity: Identity = _destination()
    answer: Any


class CallRejectMessage(_Payload):
    destination_identity: Identity = _destination()


class IceCandidateMessage(_Payload):
    destination_identity: Identity = _destination()
    candidate: Any


class JoinInviteMessage(InboundMessage):
    invitee_identity: Identity = Field(
        validation_alias=AliasChoices("inviteeIdentity", "joiningUserId", "destinationIdentity", "invitee_identity")
    )
    call_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("callId", "call_id"))


class InviteReplyMessage(InboundMessage):
    inviter_identity: Identity = Field(
        validation_alias=AliasChoices("inviterIdentity", "fromUserId", "destinationIdentity", "inviter_identity")
    )


class ParticipantJoinedMessage(_Payload):
    destination_identity: Identity = _destination()
    new_participant: Identity = Field(validation_alias=AliasChoices("newParticipant", "new_participant"))


class ParticipantLeftMessage(_Payload):
    destination_identity: Identity = _destination()
    leaving_identity: Identity = Field(
        validation_alias=AliasChoices("leavingIdentity", "leavingUserId", "leaving_identity")
    )


class InCallToneMessage(_Payload):
    destination_identity: Identity = _destination()
    digit: str

    @field_validator("digit")
    @classmethod
    def _dtmf(cls, v: str) -> str:
        if not is_dtmf_digit(v):
            raise ValueError("digit must be one of 0-9, A-D, * or #")
        return v


MESSAGE_MODELS: dict[MessageKind, type[InboundMessage]] = {
    MessageKind.login: LoginMessage,
    MessageKind.logout: EmptyMessage,
    MessageKind.presence_query: EmptyMessage,
    MessageKind.ping: EmptyMessage,
    MessageKind.call_offer: CallOfferMessage,
    MessageKind.call_answer: CallAnswerMessage,
    MessageKind.call_reject: CallRejectMessage,
    MessageKind.ice_candidate: IceCandidateMessage,
    MessageKind.join_invite: JoinInviteMessage,
    MessageKind.invite_accept: InviteReplyMessage,
    MessageKind.invite_reject: InviteReplyMessage,
    MessageKind.participant_joined: ParticipantJoinedMessage,
    MessageKind.participant_left: ParticipantLeftMessage,
    MessageKind.in_call_tone: InCallToneMessage,
    MessageKind.leave_call: LeaveCallMessage,
}


def parse_message(kind: MessageKind, data: dict[str, Any]) -> InboundMessage:
    model = MESSAGE_MODELS[kind]
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or kind.value for err in e.errors())
        raise MalformedMessage(f"Invalid {kind.value} message: {fields}") from None
