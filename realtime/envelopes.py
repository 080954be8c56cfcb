"""Wire envelopes exchanged with chat clients.

Inbound payloads are parsed into one frozen dataclass per ``type`` so the
gateway can dispatch with ``match`` and have every kind handled explicitly.
Outbound events are plain dicts built by the ``*_event`` helpers below.
"""
from dataclasses import dataclass, field
import typing as t

import orjson

from core import FunctionError
from schemas import Attachment, Message

MAX_ATTACHMENTS = 10
MAX_EMOJI_LENGTH = 32
# ids are postgres INTEGER columns
MAX_ID = 2**31 - 1


class EnvelopeError(FunctionError):
    def __init__(self, message: str, type: str | None = None) -> None:
        super().__init__(message, 400, None)
        self.type = type


def _id(payload: dict, key: str, type: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool):
        raise EnvelopeError("INCORRECT_DATA", type)
    if isinstance(value, str) and value.strip().isdecimal():
        value = int(value)
    if isinstance(value, int) and 0 < value <= MAX_ID:
        return value
    raise EnvelopeError("INCORRECT_DATA", type)


def _str(payload: dict, key: str, type: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise EnvelopeError("INCORRECT_DATA", type)
    return value


def _emoji(payload: dict, type: str) -> str:
    emoji = _str(payload, "emoji", type).strip()
    if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
        raise EnvelopeError("INCORRECT_DATA", type)
    return emoji


def _attachments(payload: dict, type: str) -> list[Attachment]:
    value = payload.get("attachments")
    if value is None:
        return []
    if not isinstance(value, list) or len(value) > MAX_ATTACHMENTS:
        raise EnvelopeError("INCORRECT_DATA", type)

    attachments: list[Attachment] = []
    for item in value:
        if not isinstance(item, dict):
            raise EnvelopeError("INCORRECT_DATA", type)
        attachment: Attachment = {
            "name": _str(item, "name", type),
            "type": _str(item, "type", type),
            "url": _str(item, "url", type),
        }
        size = item.get("size")
        if size is not None:
            if isinstance(size, bool) or not isinstance(size, int) \
                    or size < 0:
                raise EnvelopeError("INCORRECT_DATA", type)
            attachment["size"] = size
        attachments.append(attachment)
    return attachments


@dataclass(frozen=True)
class Authenticate:
    user_id: int

    @classmethod
    def from_payload(cls, payload: dict) -> "Authenticate":
        try:
            user_id = _id(payload, "message", "authenticate")
        except EnvelopeError:
            raise EnvelopeError("INVALID_USER_ID", "authenticate")
        return cls(user_id)


@dataclass(frozen=True)
class SendMessage:
    conversation_id: int
    content: str
    attachments: list[Attachment] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> "SendMessage":
        content = payload.get("message", "")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise EnvelopeError("INCORRECT_DATA", "message")
        return cls(
            _id(payload, "conversationId", "message"),
            content,
            _attachments(payload, "message")
        )


@dataclass(frozen=True)
class Typing:
    conversation_id: int

    @classmethod
    def from_payload(cls, payload: dict) -> "Typing":
        return cls(_id(payload, "conversationId", "typing"))


@dataclass(frozen=True)
class EditMessage:
    message_id: int
    content: str

    @classmethod
    def from_payload(cls, payload: dict) -> "EditMessage":
        return cls(
            _id(payload, "messageId", "edit_message"),
            _str(payload, "content", "edit_message")
        )


@dataclass(frozen=True)
class AddReaction:
    message_id: int
    emoji: str

    @classmethod
    def from_payload(cls, payload: dict) -> "AddReaction":
        return cls(
            _id(payload, "messageId", "add_reaction"),
            _emoji(payload, "add_reaction")
        )


@dataclass(frozen=True)
class RemoveReaction:
    message_id: int
    emoji: str

    @classmethod
    def from_payload(cls, payload: dict) -> "RemoveReaction":
        return cls(
            _id(payload, "messageId", "remove_reaction"),
            _emoji(payload, "remove_reaction")
        )


Envelope: t.TypeAlias = (
    Authenticate | SendMessage | Typing
    | EditMessage | AddReaction | RemoveReaction
)

ENVELOPES: dict[str, t.Callable[[dict], Envelope]] = {
    "authenticate": Authenticate.from_payload,
    "message": SendMessage.from_payload,
    "typing": Typing.from_payload,
    "edit_message": EditMessage.from_payload,
    "add_reaction": AddReaction.from_payload,
    "remove_reaction": RemoveReaction.from_payload,
}


def parse_payload(payload: t.Any) -> Envelope:
    if not isinstance(payload, dict):
        raise EnvelopeError("MALFORMED_ENVELOPE")
    type = payload.get("type")
    parser = ENVELOPES.get(type) if isinstance(type, str) else None
    if parser is None:
        raise EnvelopeError("MALFORMED_ENVELOPE")
    return parser(payload)


def parse_envelope(data: str | bytes) -> Envelope:
    try:
        payload = orjson.loads(data)
    except orjson.JSONDecodeError:
        raise EnvelopeError("MALFORMED_ENVELOPE") from None
    return parse_payload(payload)


def connected_event() -> dict:
    return {"type": "connected", "message": "Connected to chat server"}


def authenticated_event(user_id: int) -> dict:
    return {"type": "authenticated", "userId": user_id}


def new_message_event(message: Message) -> dict:
    return {
        "type": "new_message",
        "conversationId": message["conversationId"],
        "message": message
    }


def message_updated_event(message: Message) -> dict:
    return {
        "type": "message_updated",
        "conversationId": message["conversationId"],
        "message": message
    }


def message_reacted_event(message: Message) -> dict:
    return {
        "type": "message_reacted",
        "conversationId": message["conversationId"],
        "message": message
    }


def reaction_removed_event(message: Message) -> dict:
    return {
        "type": "message_reaction_removed",
        "conversationId": message["conversationId"],
        "message": message
    }


def typing_event(conversation_id: int, user_id: int) -> dict:
    return {
        "type": "typing",
        "conversationId": conversation_id,
        "userId": user_id
    }


def user_status_event(user_id: int, is_online: bool) -> dict:
    return {"type": "user_status", "userId": user_id, "isOnline": is_online}


def error_event(message: str) -> dict:
    return {"type": "error", "message": message}


def dumps(event: dict) -> str:
    return orjson.dumps(event).decode()
