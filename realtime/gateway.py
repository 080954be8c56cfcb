import logging
import typing as t

from core import FunctionError, GatewayConfig
from core import format_error_report, log_error_to_file
from realtime.base import Connection, ConnectionState, Store
from realtime.envelopes import (
    AddReaction, Authenticate, EditMessage, EnvelopeError, Envelope,
    RemoveReaction, SendMessage, Typing,
    authenticated_event, connected_event, error_event, parse_envelope
)
from realtime.fanout import FanoutEngine
from realtime.online import PresenceTracker
from realtime.registry import ConnectionRegistry

if t.TYPE_CHECKING:
    from realtime.broker import EventBroker

logger = logging.getLogger("chatgateway.gateway")


class Gateway:
    """Per-process owner of live connections and the chat event flow."""

    def __init__(
        self,
        store: Store,
        config: GatewayConfig | None = None
    ) -> None:
        self.config = config or GatewayConfig()
        self.store = store
        self.registry = ConnectionRegistry()
        self.presence = PresenceTracker(self.registry, store, self.deliver)
        self.fanout = FanoutEngine(store, self.deliver)
        self.broker: "EventBroker | None" = None

    def open_connection(self) -> Connection:
        connection = Connection.create(self.config.send_queue_size)
        connection.state = ConnectionState.OPEN
        connection.deliver(connected_event())
        return connection

    async def deliver(self, user_id: int, event: dict) -> None:
        if self.broker is not None:
            await self.broker.publish(user_id, event)
        else:
            self.deliver_local(user_id, event)

    def deliver_local(self, user_id: int, event: dict) -> bool:
        connection = self.registry.lookup(user_id)
        if connection is None:
            if __debug__:
                logger.debug(
                    "User %s is not reachable, dropping %s",
                    user_id, event.get("type")
                )
            return False
        return connection.deliver(event)

    async def authenticate(self, connection: Connection, user_id: int) -> None:
        previous_user = connection.user_id
        if previous_user is not None and previous_user != user_id:
            await self.presence.send_offline(previous_user, connection)

        connection.user_id = user_id
        connection.is_auth.set()
        if connection.closed:
            # draining after the peer left; a newer connection may own user_id
            return
        connection.deliver(authenticated_event(user_id))

        if __debug__:
            logger.debug("%r authenticated", connection)

        await self.presence.send_online(user_id, connection)

    async def disconnect(self, connection: Connection) -> None:
        connection.state = ConnectionState.CLOSED
        connection.cancel_tasks()
        if connection.user_id is not None:
            await self.presence.send_offline(connection.user_id, connection)

    def _require_user(self, connection: Connection) -> int:
        if connection.user_id is None:
            raise FunctionError("NOT_AUTHENTICATED", 401, None)
        return connection.user_id

    async def handle_raw(
        self, connection: Connection, data: str | bytes
    ) -> None:
        try:
            envelope = parse_envelope(data)
        except EnvelopeError as e:
            if e.type == "typing":
                return
            if __debug__:
                logger.debug(
                    "Rejected envelope from %r: %s", connection, e.message
                )
            connection.deliver(error_event(e.message))
            return

        await self.handle(connection, envelope)

    async def handle(self, connection: Connection, envelope: Envelope) -> None:
        try:
            await self.dispatch(connection, envelope)
        except FunctionError as e:
            connection.deliver(error_event(e.message))
        except Exception as e:
            logger.exception(e)
            await self.report_error(e, connection)
            connection.deliver(error_event("INTERNAL_ERROR"))

    async def dispatch(
        self, connection: Connection, envelope: Envelope
    ) -> None:
        match envelope:
            case Authenticate(user_id=user_id):
                await self.authenticate(connection, user_id)
            case Typing(conversation_id=conversation_id):
                if connection.user_id is not None:
                    await self.fanout.typing(
                        connection.user_id, conversation_id
                    )
            case SendMessage():
                await self.fanout.send_message(
                    self._require_user(connection),
                    envelope.conversation_id,
                    envelope.content,
                    envelope.attachments
                )
            case EditMessage():
                await self.fanout.edit_message(
                    self._require_user(connection),
                    envelope.message_id,
                    envelope.content
                )
            case AddReaction():
                await self.fanout.add_reaction(
                    self._require_user(connection),
                    envelope.message_id,
                    envelope.emoji
                )
            case RemoveReaction():
                await self.fanout.remove_reaction(
                    self._require_user(connection),
                    envelope.message_id,
                    envelope.emoji
                )
            case _:
                t.assert_never(envelope)

    async def report_error(
        self, error: Exception, connection: Connection
    ) -> None:
        if self.config.error_log_dir is None:
            return
        message = format_error_report(
            error,
            f"Endpoint: websocket (connection {connection.id}, "
            f"user {connection.user_id})"
        )
        try:
            await log_error_to_file(
                message, "error_websocket.log", self.config.error_log_dir
            )
        except OSError as e:
            logger.exception(e)
