import asyncio
import typing as t
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from realtime.base import Connection, ConnectionState
from realtime.envelopes import dumps
from realtime.gateway import Gateway

logger = logging.getLogger("chatgateway.websocket")
router = APIRouter()


def get_gateway(websocket: WebSocket) -> Gateway:
    return websocket.app.state.gateway


async def websocket_send(websocket: WebSocket, message: dict) -> None:
    await websocket.send_text(dumps(message))


async def close_connection(
    connection: Connection,
    websocket: WebSocket,
    reason: str = "CLOSED"
) -> None:
    if __debug__:
        logger.debug("Closing %r", connection)

    if not connection.closed:
        connection.state = ConnectionState.CLOSING
        connection.stop_receiving()

        try:
            await websocket.close(1000, reason)
        except RuntimeError as e:
            # peer went away before the close frame
            if __debug__:
                logger.debug("Close of %r failed: %s", connection, e)

        if __debug__:
            logger.debug("Connection closed")


async def receiving(connection: Connection, websocket: WebSocket) -> None:
    try:
        while not connection.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            data = message.get("text")
            if data is None:
                data = message.get("bytes")
            if data is None:
                continue

            if __debug__:
                logger.debug("Received message, putting it in queue...")

            await connection.incoming.put(data)
    except asyncio.CancelledError:
        return
    except Exception as e:
        logger.exception(e)
        await close_connection(connection, websocket, "INTERNAL_ERROR")
        return

    if __debug__:
        logger.debug("%r disconnected", connection)
    connection.state = ConnectionState.CLOSED


async def incoming_task(
    connection: Connection,
    websocket: WebSocket,
    gateway: Gateway
) -> None:
    try:
        while True:
            received = await connection.incoming.get()
            try:
                await gateway.handle_raw(connection, received)
            finally:
                connection.incoming.task_done()
    except asyncio.CancelledError:
        return
    except Exception as e:
        logger.exception(e)
        await close_connection(connection, websocket, "INTERNAL_ERROR")


async def sending_task(
    connection: Connection,
    websocket: WebSocket
) -> None:
    try:
        while not connection.closed:
            message = await connection.sending.get()

            if __debug__:
                logger.debug("Sending %s event", message.get("type"))

            await websocket_send(websocket, message)
            connection.sending.task_done()
    except asyncio.CancelledError:
        return
    except WebSocketDisconnect:
        connection.state = ConnectionState.CLOSED
        connection.stop_receiving()
    except Exception as e:
        logger.exception(e)
        await close_connection(connection, websocket, "INTERNAL_ERROR")


async def auth_timeout_task(
    connection: Connection,
    websocket: WebSocket,
    timeout: float
) -> None:
    try:
        await asyncio.wait_for(connection.is_auth.wait(), timeout)

        if __debug__:
            logger.debug("%r authenticated in time", connection)
    except asyncio.TimeoutError:
        await close_connection(connection, websocket, "AUTH_TIMEOUT")
    except asyncio.CancelledError:
        return
    except Exception as e:
        logger.exception(e)
        await close_connection(connection, websocket, "INTERNAL_ERROR")


def create_task(
    connection: Connection,
    coroutine: t.Coroutine[t.Any, t.Any, None]
) -> asyncio.Task[None]:
    if __debug__:
        logger.debug("Creating task %s", repr(coroutine))

    task = asyncio.create_task(coroutine)
    connection.tasks.append(task)
    return task


async def drain_incoming(
    connection: Connection,
    processor: asyncio.Task[None]
) -> None:
    """Wait until every received envelope has been handled."""
    if processor.done():
        return

    joined = asyncio.create_task(connection.incoming.join())
    try:
        await asyncio.wait(
            (joined, processor), return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        joined.cancel()


@router.websocket("/ws")
async def ws(websocket: WebSocket) -> None:
    if __debug__:
        logger.debug("New connection")

    gateway = get_gateway(websocket)
    await websocket.accept()
    connection = gateway.open_connection()

    if __debug__:
        logger.debug("Accepted %r, time for main tasks", connection)

    try:
        connection.receiver = create_task(
            connection, receiving(connection, websocket)
        )
        create_task(connection, sending_task(connection, websocket))
        processor = create_task(
            connection, incoming_task(connection, websocket, gateway)
        )
        create_task(
            connection,
            auth_timeout_task(
                connection, websocket, gateway.config.auth_timeout
            )
        )

        await asyncio.wait((connection.receiver,))
        await drain_incoming(connection, processor)
    finally:
        if __debug__:
            logger.debug("Cleaning up %r", connection)

        await gateway.disconnect(connection)
        await asyncio.gather(*connection.tasks, return_exceptions=True)


def load(app) -> None:
    app.include_router(router)
