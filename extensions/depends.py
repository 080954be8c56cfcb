import typing as t

import orjson
from fastapi import Request

from core import FunctionError, are_all_keys_present
from realtime.envelopes import MAX_ID
from realtime.gateway import Gateway


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_user_id(request: Request) -> int:
    header = get_gateway(request).config.identity_header
    user_id = request.headers.get(header, "")
    if not user_id.isdecimal() or not 0 < int(user_id) <= MAX_ID:
        raise FunctionError("UNAUTHORIZED", 401, None)
    return int(user_id)


def load_data(*keys: str) -> t.Callable[[Request], t.Awaitable[dict]]:
    """Dependency that reads a JSON object body holding ``keys``."""
    async def dependency(request: Request) -> dict:
        try:
            data = orjson.loads(await request.body())
        except orjson.JSONDecodeError:
            raise FunctionError("INCORRECT_DATA", 400, None) from None
        if not isinstance(data, dict) or not are_all_keys_present(keys, data):
            raise FunctionError("INCORRECT_DATA", 400, None)
        return data

    return dependency
