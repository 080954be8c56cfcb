import copy
import datetime

import pytest

from core import GatewayConfig
from realtime.base import Connection, ConnectionState
from realtime.gateway import Gateway
from schemas import Attachment, Conversation, Message, UserPublic


class MemoryStore:
    """In-memory store with the same record shapes as ChatStore."""

    def __init__(self) -> None:
        self.users: dict[int, UserPublic] = {}
        self.conversations: dict[int, dict] = {}
        self.members: dict[int, list[int]] = {}
        self.messages: dict[int, dict] = {}
        self.online_updates: list[tuple[int, bool]] = []
        self._next_conversation = 1
        self._next_message = 1

    def add_user(self, user_id: int, username: str | None = None) -> None:
        self.users[user_id] = {
            "id": user_id,
            "username": username or f"user{user_id}",
            "displayName": None,
            "avatar": None,
            "bio": None,
            "pronouns": None,
            "isOnline": False,
        }

    def add_conversation(
        self, conversation_id: int, member_ids: list[int],
        name: str | None = None
    ) -> None:
        for user_id in member_ids:
            if user_id not in self.users:
                self.add_user(user_id)
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "name": name,
            "isGroup": len(member_ids) > 2,
            "createdAt": datetime.datetime(
                2024, 1, 1, tzinfo=datetime.timezone.utc
            ),
        }
        self.members[conversation_id] = sorted(member_ids)
        self._next_conversation = max(
            self._next_conversation, conversation_id + 1
        )

    def add_message(
        self, message_id: int, conversation_id: int, sender_id: int,
        content: str = "hello"
    ) -> None:
        self.messages[message_id] = {
            "id": message_id,
            "conversationId": conversation_id,
            "senderId": sender_id,
            "content": content,
            "createdAt": datetime.datetime.now(datetime.timezone.utc),
            "updatedAt": None,
            "isEdited": False,
            "attachments": [],
            "reactions": [],
        }
        self._next_message = max(self._next_message, message_id + 1)

    def _message(self, message_id: int) -> Message:
        message = copy.deepcopy(self.messages[message_id])
        message["sender"] = copy.deepcopy(self.users[message["senderId"]])
        return message

    def _conversation(self, conversation_id: int) -> Conversation:
        conversation = copy.deepcopy(self.conversations[conversation_id])
        conversation["members"] = [
            copy.deepcopy(self.users[user_id])
            for user_id in self.members[conversation_id]
        ]
        message_ids = [
            m["id"] for m in self.messages.values()
            if m["conversationId"] == conversation_id
        ]
        conversation["lastMessage"] = (
            self._message(max(message_ids)) if message_ids else None
        )
        return conversation

    async def get_user(self, user_id: int) -> UserPublic | None:
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def update_online_status(
        self, user_id: int, is_online: bool
    ) -> None:
        self.online_updates.append((user_id, is_online))
        if user_id in self.users:
            self.users[user_id]["isOnline"] = is_online

    async def get_conversation(
        self, conversation_id: int
    ) -> Conversation | None:
        if conversation_id not in self.conversations:
            return None
        return self._conversation(conversation_id)

    async def get_conversations_for_user(
        self, user_id: int
    ) -> list[Conversation]:
        return [
            self._conversation(conversation_id)
            for conversation_id, members in self.members.items()
            if user_id in members
        ]

    async def get_member_ids(self, conversation_id: int) -> list[int] | None:
        if conversation_id not in self.conversations:
            return None
        return list(self.members[conversation_id])

    async def get_contact_ids(self, user_id: int) -> list[int]:
        contacts = {
            member
            for members in self.members.values() if user_id in members
            for member in members
        }
        contacts.discard(user_id)
        return sorted(contacts)

    async def create_conversation(
        self, creator_id: int, member_ids: list[int],
        name: str | None = None, is_group: bool = False
    ) -> Conversation:
        conversation_id = self._next_conversation
        self.add_conversation(
            conversation_id, sorted({creator_id, *member_ids}), name
        )
        self.conversations[conversation_id]["isGroup"] = is_group
        return self._conversation(conversation_id)

    async def get_message(self, message_id: int) -> Message | None:
        if message_id not in self.messages:
            return None
        return self._message(message_id)

    async def get_messages_for_conversation(
        self, conversation_id: int,
        limit: int = 50, before: int | None = None
    ) -> list[Message]:
        ids = sorted(
            m["id"] for m in self.messages.values()
            if m["conversationId"] == conversation_id
            and (before is None or m["id"] < before)
        )
        return [self._message(i) for i in ids[-limit:]]

    async def create_message(
        self, conversation_id: int, sender_id: int,
        content: str, attachments: list[Attachment]
    ) -> Message:
        message_id = self._next_message
        self.add_message(message_id, conversation_id, sender_id, content)
        self.messages[message_id]["attachments"] = list(attachments)
        return self._message(message_id)

    async def update_message(
        self, message_id: int, content: str
    ) -> Message | None:
        message = self.messages.get(message_id)
        if message is None:
            return None
        message["content"] = content
        message["isEdited"] = True
        message["updatedAt"] = datetime.datetime.now(datetime.timezone.utc)
        return self._message(message_id)

    async def add_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> Message | None:
        message = self.messages.get(message_id)
        if message is None:
            return None
        reaction = {"emoji": emoji, "userId": user_id}
        if reaction not in message["reactions"]:
            message["reactions"].append(reaction)
        return self._message(message_id)

    async def remove_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> Message | None:
        message = self.messages.get(message_id)
        if message is None:
            return None
        message["reactions"] = [
            r for r in message["reactions"]
            if not (r["emoji"] == emoji and r["userId"] == user_id)
        ]
        return self._message(message_id)


def open_connection() -> Connection:
    connection = Connection.create()
    connection.state = ConnectionState.OPEN
    return connection


def drain(connection: Connection) -> list[dict]:
    events = []
    while not connection.sending.empty():
        events.append(connection.sending.get_nowait())
    return events


def event_types(connection: Connection) -> list[str]:
    return [event["type"] for event in drain(connection)]


@pytest.fixture
def store() -> MemoryStore:
    store = MemoryStore()
    store.add_conversation(7, [42, 99])
    store.add_conversation(8, [1, 2, 3])
    return store


@pytest.fixture
def config() -> GatewayConfig:
    return GatewayConfig(auth_timeout=5.0, error_log_dir=None)


@pytest.fixture
def gateway(store: MemoryStore, config: GatewayConfig) -> Gateway:
    return Gateway(store, config)
