from fastapi import APIRouter, Depends, FastAPI, Path, Query
from starlette.responses import Response

from core import response, route, FunctionError
from extensions.depends import get_gateway, get_user_id, load_data
from realtime.envelopes import (
    MAX_ID, AddReaction, EditMessage, RemoveReaction, SendMessage
)
from realtime.gateway import Gateway

router = APIRouter()

MAX_HISTORY_LIMIT = 100


"""
REST API:

GET /conversations                       -> Get conversations
POST /conversations                      -> Create conversation
GET /conversations/<id>                  -> Get conversation
GET /conversations/<id>/messages         -> Get message history
POST /conversations/<id>/messages        -> Create message
PATCH /messages/<id>                     -> Edit message
POST /messages/<id>/reactions            -> Add reaction
DELETE /messages/<id>/reactions/<emoji>  -> Remove reaction
"""


async def check_member(
    gateway: Gateway, conversation_id: int, user_id: int
) -> None:
    member_ids = await gateway.store.get_member_ids(conversation_id)
    if member_ids is None:
        raise FunctionError("CONVERSATION_NOT_FOUND", 404, None)
    if user_id not in member_ids:
        raise FunctionError("NOT_A_MEMBER", 403, None)


@route(router, "/conversations", methods=["GET"])
async def get_conversations(
    user_id: int = Depends(get_user_id),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    result = await gateway.store.get_conversations_for_user(user_id)

    return response(data={
        "conversations": result
    })


@route(router, "/conversations", methods=["POST"])
async def create_conversation(
    user_id: int = Depends(get_user_id),
    data: dict = Depends(load_data("userIds")),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    user_ids = data["userIds"]
    name = data.get("name")
    is_group = data.get("isGroup", False)

    if not isinstance(user_ids, list) or not all(
        isinstance(i, int) and not isinstance(i, bool) and 0 < i <= MAX_ID
        for i in user_ids
    ):
        raise FunctionError("INCORRECT_DATA", 400, None)
    if name is not None and not isinstance(name, str):
        raise FunctionError("INCORRECT_DATA", 400, None)
    if not isinstance(is_group, bool):
        raise FunctionError("INCORRECT_DATA", 400, None)

    others = sorted(set(user_ids) - {user_id})
    if not others or (not is_group and len(others) != 1):
        raise FunctionError("INCORRECT_DATA", 400, None)

    conversation = await gateway.store.create_conversation(
        user_id, others, name, is_group
    )

    return response(data={
        "conversation": conversation
    }, status_code=201)


@route(router, "/conversations/{conversation_id}", methods=["GET"])
async def get_conversation(
    conversation_id: int = Path(..., gt=0, le=MAX_ID),
    user_id: int = Depends(get_user_id),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    await check_member(gateway, conversation_id, user_id)
    conversation = await gateway.store.get_conversation(conversation_id)
    if conversation is None:
        raise FunctionError("CONVERSATION_NOT_FOUND", 404, None)

    return response(data={
        "conversation": conversation
    })


@route(router, "/conversations/{conversation_id}/messages", methods=["GET"])
async def get_messages(
    conversation_id: int = Path(..., gt=0, le=MAX_ID),
    limit: int = Query(50, gt=0, le=MAX_HISTORY_LIMIT),
    before: int | None = Query(None, gt=0, le=MAX_ID),
    user_id: int = Depends(get_user_id),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    await check_member(gateway, conversation_id, user_id)
    messages = await gateway.store.get_messages_for_conversation(
        conversation_id, limit, before
    )

    return response(data={
        "messages": messages
    })


@route(router, "/conversations/{conversation_id}/messages", methods=["POST"])
async def create_message(
    conversation_id: int = Path(..., gt=0, le=MAX_ID),
    user_id: int = Depends(get_user_id),
    data: dict = Depends(load_data()),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    envelope = SendMessage.from_payload({
        **data,
        "conversationId": conversation_id
    })

    message = await gateway.fanout.send_message(
        user_id,
        envelope.conversation_id,
        envelope.content,
        envelope.attachments
    )

    return response(data={
        "message": message
    }, status_code=201)


@route(router, "/messages/{message_id}", methods=["PATCH"])
async def edit_message(
    message_id: int = Path(..., gt=0, le=MAX_ID),
    user_id: int = Depends(get_user_id),
    data: dict = Depends(load_data("content")),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    envelope = EditMessage.from_payload({
        **data,
        "messageId": message_id
    })

    message = await gateway.fanout.edit_message(
        user_id, envelope.message_id, envelope.content
    )

    return response(data={
        "message": message
    })


@route(router, "/messages/{message_id}/reactions", methods=["POST"])
async def add_reaction(
    message_id: int = Path(..., gt=0, le=MAX_ID),
    user_id: int = Depends(get_user_id),
    data: dict = Depends(load_data("emoji")),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    envelope = AddReaction.from_payload({
        **data,
        "messageId": message_id
    })

    message = await gateway.fanout.add_reaction(
        user_id, envelope.message_id, envelope.emoji
    )

    return response(data={
        "message": message
    })


@route(
    router, "/messages/{message_id}/reactions/{emoji}",
    methods=["DELETE"]
)
async def remove_reaction(
    message_id: int = Path(..., gt=0, le=MAX_ID),
    emoji: str = Path(...),
    user_id: int = Depends(get_user_id),
    gateway: Gateway = Depends(get_gateway)
) -> Response:
    envelope = RemoveReaction.from_payload({
        "messageId": message_id,
        "emoji": emoji
    })

    message = await gateway.fanout.remove_reaction(
        user_id, envelope.message_id, envelope.emoji
    )

    return response(data={
        "message": message
    })


def load(app: FastAPI):
    app.include_router(router)
