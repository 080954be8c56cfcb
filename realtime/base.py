import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
import typing as t

from schemas import Attachment, Conversation, Message, UserPublic

logger = logging.getLogger("chatgateway.connection")

_connection_ids = itertools.count(1)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    sending: asyncio.Queue[dict]
    incoming: asyncio.Queue[str | bytes]
    tasks: list[asyncio.Task[None]] = field(default_factory=list)
    receiver: asyncio.Task[None] | None = None
    is_auth: asyncio.Event = field(default_factory=asyncio.Event)
    user_id: int | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    id: int = field(default_factory=lambda: next(_connection_ids))

    @classmethod
    def create(cls, queue_size: int = 128) -> "Connection":
        return cls(
            sending=asyncio.Queue(queue_size),
            incoming=asyncio.Queue(queue_size)
        )

    @property
    def closed(self) -> bool:
        return self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED)

    def deliver(self, event: dict) -> bool:
        """Enqueue an event without waiting; returns False if dropped."""
        if self.state is not ConnectionState.OPEN:
            return False
        try:
            self.sending.put_nowait(event)
        except asyncio.QueueFull:
            if __debug__:
                logger.debug(
                    "Send queue of connection %s is full, dropping %s",
                    self.id, event.get("type")
                )
            return False
        return True

    def stop_receiving(self) -> None:
        if self.receiver is not None and not self.receiver.done():
            if self.receiver is not asyncio.current_task():
                self.receiver.cancel()

    def cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in self.tasks:
            if task is not current and not task.done():
                task.cancel()

    def __repr__(self) -> str:
        return (
            f"<Connection id={self.id} user_id={self.user_id} "
            f"state={self.state.value}>"
        )


class Store(t.Protocol):
    async def get_user(self, user_id: int) -> UserPublic | None: ...

    async def update_online_status(
        self, user_id: int, is_online: bool
    ) -> None: ...

    async def get_conversation(
        self, conversation_id: int
    ) -> Conversation | None: ...

    async def get_conversations_for_user(
        self, user_id: int
    ) -> list[Conversation]: ...

    async def get_member_ids(
        self, conversation_id: int
    ) -> list[int] | None: ...

    async def get_contact_ids(self, user_id: int) -> list[int]: ...

    async def create_conversation(
        self, creator_id: int, member_ids: list[int],
        name: str | None = None, is_group: bool = False
    ) -> Conversation: ...

    async def get_message(self, message_id: int) -> Message | None: ...

    async def get_messages_for_conversation(
        self, conversation_id: int,
        limit: int = 50, before: int | None = None
    ) -> list[Message]: ...

    async def create_message(
        self, conversation_id: int, sender_id: int,
        content: str, attachments: list[Attachment]
    ) -> Message: ...

    async def update_message(
        self, message_id: int, content: str
    ) -> Message | None: ...

    async def add_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> Message | None: ...

    async def remove_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> Message | None: ...


Deliver: t.TypeAlias = t.Callable[[int, dict], t.Awaitable[None]]
