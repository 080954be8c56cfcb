"""Reconnecting chat client with an ordered outbound queue.

Actions issued while the connection is down are kept in FIFO order and
replayed once the gateway acknowledges authentication again. Typing
notices are never queued.
"""
import asyncio
import logging
import time
import typing as t
from collections import defaultdict, deque
from enum import Enum

import orjson
from statemachine import State, StateMachine
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from schemas import Attachment

logger = logging.getLogger("chatgateway.client")

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 3.0
TYPING_TIMEOUT = 3.0

TRANSPORT_ERRORS = (ConnectionClosed, WebSocketException, OSError)

Handler: t.TypeAlias = t.Callable[[dict], t.Awaitable[None] | None]
Connect: t.TypeAlias = t.Callable[[str], t.Awaitable[t.Any]]


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    EXHAUSTED = "exhausted"


class ConnectionMachine(StateMachine):
    """
    Client connection lifecycle.

    disconnected -> connecting -> authenticating -> ready, falling back to
    disconnected when the socket fails or drops. ``give_up`` parks the
    client in exhausted once the reconnect budget is spent; only a manual
    connect leaves it.
    """

    disconnected = State("Disconnected", initial=True)
    connecting = State("Connecting")
    authenticating = State("Authenticating")
    ready = State("Ready")
    exhausted = State("Exhausted")

    begin_connect = disconnected.to(connecting) | exhausted.to(connecting)
    connection_opened = connecting.to(authenticating)
    authenticated = authenticating.to(ready)
    connection_failed = connecting.to(disconnected)
    connection_lost = (
        authenticating.to(disconnected) | ready.to(disconnected)
    )
    give_up = disconnected.to(exhausted)
    stop = (
        connecting.to(disconnected) | authenticating.to(disconnected)
        | ready.to(disconnected) | exhausted.to(disconnected)
    )

    def __init__(self, url: str) -> None:
        # on_enter_state runs for the initial state during __init__
        self.url = url
        super().__init__()

    def on_enter_state(self, state: State, event=None, **kwargs) -> None:
        if __debug__:
            logger.debug("%s: %s -> %s", self.url, event, state.id)


class ChatClient:
    def __init__(
        self,
        url: str,
        *,
        reconnect_delay: float = RECONNECT_DELAY,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        connect: Connect = ws_connect
    ) -> None:
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts
        self._connect = connect

        self.machine = ConnectionMachine(url)
        self.user_id: int | None = None
        self.attempts = 0
        self.queue: deque[dict] = deque()
        self.handlers: defaultdict[str, list[Handler]] = defaultdict(list)

        self._ws: t.Any = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._draining = False

    @property
    def state(self) -> ClientState:
        return ClientState(self.machine.current_state.id)

    @property
    def is_ready(self) -> bool:
        return self.state is ClientState.READY

    def on(self, type: str, handler: Handler) -> t.Callable[[], None]:
        self.handlers[type].append(handler)

        def unsubscribe() -> None:
            if handler in self.handlers[type]:
                self.handlers[type].remove(handler)

        return unsubscribe

    async def connect(self, user_id: int) -> None:
        self.user_id = user_id
        self._closing = False
        self.attempts = 0
        if self.state in (
            ClientState.DISCONNECTED, ClientState.EXHAUSTED
        ) and not self._reconnect_pending():
            await self._open()

    async def reconnect(self) -> None:
        """Manual retry; restores the full reconnect budget."""
        if self.user_id is None:
            raise RuntimeError("connect() was never called")
        self._cancel_reconnect()
        self._closing = False
        self.attempts = 0
        if self.state in (ClientState.DISCONNECTED, ClientState.EXHAUSTED):
            await self._open()

    async def disconnect(self) -> None:
        self._closing = True
        self._cancel_reconnect()
        ws, self._ws = self._ws, None
        if self.state is not ClientState.DISCONNECTED:
            self.machine.stop()
        if ws is not None:
            try:
                await ws.close()
            except TRANSPORT_ERRORS:
                pass
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._reader = None

    async def send_message(
        self, conversation_id: int, content: str,
        attachments: list[Attachment] | None = None
    ) -> bool:
        action: dict = {
            "type": "message",
            "conversationId": conversation_id,
            "message": content
        }
        if attachments:
            action["attachments"] = attachments
        return await self.send(action)

    async def edit_message(self, message_id: int, content: str) -> bool:
        return await self.send({
            "type": "edit_message",
            "messageId": message_id,
            "content": content
        })

    async def add_reaction(self, message_id: int, emoji: str) -> bool:
        return await self.send({
            "type": "add_reaction",
            "messageId": message_id,
            "emoji": emoji
        })

    async def remove_reaction(self, message_id: int, emoji: str) -> bool:
        return await self.send({
            "type": "remove_reaction",
            "messageId": message_id,
            "emoji": emoji
        })

    async def send_typing(self, conversation_id: int) -> bool:
        if not self.is_ready:
            return False
        ws = self._ws
        try:
            await ws.send(orjson.dumps({
                "type": "typing",
                "conversationId": conversation_id
            }).decode())
        except TRANSPORT_ERRORS:
            self._connection_lost(ws)
            return False
        return True

    async def send(self, action: dict) -> bool:
        """Send now if possible, otherwise queue; True means sent."""
        if not self.is_ready or self.queue or self._draining:
            if __debug__:
                logger.debug("Queueing %s while %s", action["type"],
                             self.state.value)
            self.queue.append(action)
            return False

        ws = self._ws
        try:
            await ws.send(orjson.dumps(action).decode())
        except TRANSPORT_ERRORS as e:
            logger.warning("Send failed (%s), queueing %s", e, action["type"])
            self.queue.append(action)
            self._connection_lost(ws)
            return False
        return True

    async def _open(self) -> None:
        self.machine.begin_connect()
        try:
            ws = await self._connect(self.url)
        except TRANSPORT_ERRORS as e:
            logger.warning("Connection to %s failed: %s", self.url, e)
            if self.state is not ClientState.CONNECTING:
                # disconnect() already stopped the machine
                return
            self.machine.connection_failed()
            self._schedule_reconnect()
            return

        if self._closing or self.state is not ClientState.CONNECTING:
            await ws.close()
            return

        self._ws = ws
        self.attempts = 0
        self.machine.connection_opened()
        self._reader = asyncio.create_task(self._read(ws))

        try:
            await ws.send(orjson.dumps({
                "type": "authenticate",
                "message": self.user_id
            }).decode())
        except TRANSPORT_ERRORS:
            self._connection_lost(ws)

    async def _read(self, ws: t.Any) -> None:
        try:
            async for raw in ws:
                try:
                    event = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    logger.warning("Dropping undecodable frame")
                    continue
                if isinstance(event, dict):
                    await self._dispatch(event)
        except asyncio.CancelledError:
            return
        except TRANSPORT_ERRORS as e:
            if __debug__:
                logger.debug("Connection closed: %s", e)
        self._connection_lost(ws)

    async def _dispatch(self, event: dict) -> None:
        type = event.get("type")
        if type == "authenticated" \
                and self.state is ClientState.AUTHENTICATING:
            self.machine.authenticated()
            logger.info("Authenticated as user %s", self.user_id)
            await self._drain()

        for handler in list(self.handlers.get(type, ())):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.exception(e)

    async def _drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self.queue and self.is_ready:
                action = self.queue.popleft()
                ws = self._ws
                try:
                    await ws.send(orjson.dumps(action).decode())
                except TRANSPORT_ERRORS:
                    self.queue.appendleft(action)
                    self._connection_lost(ws)
                    break
        finally:
            self._draining = False

    def _connection_lost(self, ws: t.Any) -> None:
        if self._ws is not ws or ws is None:
            return
        self._ws = None
        self.machine.connection_lost()

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

        if not self._closing:
            self._schedule_reconnect()

    def _reconnect_pending(self) -> bool:
        return (
            self._reconnect_task is not None
            and not self._reconnect_task.done()
        )

    def _cancel_reconnect(self) -> None:
        if self._reconnect_pending():
            self._reconnect_task.cancel()  # type: ignore[union-attr]
        self._reconnect_task = None

    def _schedule_reconnect(self) -> None:
        if self._closing or self._reconnect_pending():
            return
        if self.attempts >= self.max_attempts:
            self.machine.give_up()
            logger.error(
                "Giving up after %s reconnect attempts", self.attempts
            )
            return

        self.attempts += 1
        logger.info(
            "Reconnecting in %ss (attempt %s/%s)",
            self.reconnect_delay, self.attempts, self.max_attempts
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        await self._open()


class TypingTracker:
    """Client-side expiry of typing indicators."""

    def __init__(
        self,
        timeout: float = TYPING_TIMEOUT,
        clock: t.Callable[[], float] = time.monotonic
    ) -> None:
        self.timeout = timeout
        self.clock = clock
        self.typing: dict[tuple[int, int], float] = {}

    def on_typing(self, event: dict) -> None:
        key = (event["conversationId"], event["userId"])
        self.typing[key] = self.clock() + self.timeout

    def on_message(self, event: dict) -> None:
        message = event["message"]
        self.typing.pop((event["conversationId"], message["senderId"]), None)

    def typing_users(self, conversation_id: int) -> list[int]:
        now = self.clock()
        for key, expires in list(self.typing.items()):
            if expires <= now:
                del self.typing[key]
        return sorted(
            user_id for (cid, user_id) in self.typing
            if cid == conversation_id
        )

    def attach(self, client: ChatClient) -> t.Callable[[], None]:
        unsubscribers = [
            client.on("typing", self.on_typing),
            client.on("new_message", self.on_message),
        ]

        def detach() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return detach
