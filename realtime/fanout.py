import logging
import typing as t

from core import FunctionError
from realtime.base import Deliver, Store
from realtime.envelopes import (
    message_reacted_event, message_updated_event, new_message_event,
    reaction_removed_event, typing_event
)
from schemas import Attachment, Message

logger = logging.getLogger("chatgateway.fanout")

MAX_CONTENT_LENGTH = 10000


class FanoutEngine:
    """Applies chat actions to the store and pushes the resulting events.

    Membership is fetched again after every write, never reused between
    actions. Validation and authorization happen before anything is
    persisted.
    """

    def __init__(self, store: Store, deliver: Deliver) -> None:
        self.store = store
        self.deliver = deliver

    async def broadcast(
        self, member_ids: t.Iterable[int], event: dict,
        exclude: int | None = None
    ) -> None:
        for member_id in member_ids:
            if member_id == exclude:
                continue
            try:
                await self.deliver(member_id, event)
            except Exception as e:
                logger.exception(e)

    async def _members(self, conversation_id: int, user_id: int) -> list[int]:
        member_ids = await self.store.get_member_ids(conversation_id)
        if member_ids is None:
            raise FunctionError("CONVERSATION_NOT_FOUND", 404, None)
        if user_id not in member_ids:
            raise FunctionError("NOT_A_MEMBER", 403, None)
        return member_ids

    async def _message(self, message_id: int) -> Message:
        message = await self.store.get_message(message_id)
        if message is None:
            raise FunctionError("MESSAGE_NOT_FOUND", 404, None)
        return message

    async def _current_members(self, conversation_id: int) -> list[int]:
        return await self.store.get_member_ids(conversation_id) or []

    async def send_message(
        self, user_id: int, conversation_id: int,
        content: str, attachments: list[Attachment] | None = None
    ) -> Message:
        content = content.strip()
        attachments = attachments or []
        if not content and not attachments:
            raise FunctionError("INCORRECT_DATA", 400, None)
        if len(content) > MAX_CONTENT_LENGTH:
            raise FunctionError("INCORRECT_DATA", 400, None)

        await self._members(conversation_id, user_id)

        message = await self.store.create_message(
            conversation_id, user_id, content, attachments
        )

        if __debug__:
            logger.debug(
                "User %s sent message %s to conversation %s",
                user_id, message["id"], conversation_id
            )

        await self.broadcast(
            await self._current_members(conversation_id),
            new_message_event(message),
            exclude=user_id
        )
        return message

    async def typing(self, user_id: int, conversation_id: int) -> None:
        member_ids = await self.store.get_member_ids(conversation_id)
        if not member_ids or user_id not in member_ids:
            return

        await self.broadcast(
            member_ids,
            typing_event(conversation_id, user_id),
            exclude=user_id
        )

    async def edit_message(
        self, user_id: int, message_id: int, content: str
    ) -> Message:
        content = content.strip()
        if not content or len(content) > MAX_CONTENT_LENGTH:
            raise FunctionError("INCORRECT_DATA", 400, None)

        message = await self._message(message_id)
        if message["senderId"] != user_id:
            raise FunctionError("FORBIDDEN", 403, None)

        updated = await self.store.update_message(message_id, content)
        if updated is None:
            raise FunctionError("MESSAGE_NOT_FOUND", 404, None)

        await self.broadcast(
            await self._current_members(updated["conversationId"]),
            message_updated_event(updated)
        )
        return updated

    async def add_reaction(
        self, user_id: int, message_id: int, emoji: str
    ) -> Message:
        emoji = emoji.strip()
        if not emoji:
            raise FunctionError("INCORRECT_DATA", 400, None)

        message = await self._message(message_id)
        await self._members(message["conversationId"], user_id)

        updated = await self.store.add_reaction(message_id, user_id, emoji)
        if updated is None:
            raise FunctionError("MESSAGE_NOT_FOUND", 404, None)

        await self.broadcast(
            await self._current_members(updated["conversationId"]),
            message_reacted_event(updated)
        )
        return updated

    async def remove_reaction(
        self, user_id: int, message_id: int, emoji: str
    ) -> Message:
        emoji = emoji.strip()
        if not emoji:
            raise FunctionError("INCORRECT_DATA", 400, None)

        message = await self._message(message_id)
        await self._members(message["conversationId"], user_id)

        updated = await self.store.remove_reaction(
            message_id, user_id, emoji
        )
        if updated is None:
            raise FunctionError("MESSAGE_NOT_FOUND", 404, None)

        await self.broadcast(
            await self._current_members(updated["conversationId"]),
            reaction_removed_event(updated)
        )
        return updated
