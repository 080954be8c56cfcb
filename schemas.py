import datetime
from typing import TypedDict, NotRequired


class UserPublic(TypedDict):
    id: int
    username: str
    displayName: str | None
    avatar: str | None
    bio: str | None
    pronouns: str | None
    isOnline: bool


class Attachment(TypedDict):
    name: str
    type: str
    url: str
    size: NotRequired[int]


class Reaction(TypedDict):
    emoji: str
    userId: int


class Message(TypedDict):
    id: int
    conversationId: int
    senderId: int
    content: str
    createdAt: datetime.datetime | str
    updatedAt: datetime.datetime | str | None
    isEdited: bool
    attachments: list[Attachment]
    reactions: list[Reaction]
    sender: UserPublic


class Conversation(TypedDict):
    id: int
    name: str | None
    isGroup: bool
    createdAt: datetime.datetime | str
    members: list[UserPublic]
    lastMessage: NotRequired[Message | None]
