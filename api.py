import asyncio
import contextlib
import logging
import os

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from core import GatewayConfig, FunctionError, response, route, setup_logger
from core import format_error_report, get_proc_identity, log_error_to_file
from extensions import load_all
from realtime.base import Store
from realtime.broker import EventBroker
from realtime.gateway import Gateway
from realtime.websocket import load as load_websocket
from utils.chat import ChatStore
from utils.database import create_pool

logger = logging.getLogger("chatgateway.api")

allow_headers = [
    "Upgrade", "Connection",
    "Sec-WebSocket-Key", "Sec-WebSocket-Version",
    "Origin", "Sec-WebSocket-Protocol",
    "Content-Type", "Authorization"
]


def create_app(
    config: GatewayConfig | None = None,
    store: Store | None = None
) -> FastAPI:
    config = config or GatewayConfig.from_env()

    chat_store = ChatStore() if store is None else None
    gateway = Gateway(store or chat_store, config)  # type: ignore[arg-type]

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        if chat_store is not None:
            chat_store.pool = await create_pool(
                **config.load_postgres_config()
            )

        broker_task = None
        if config.redis_url:
            broker = EventBroker(
                Redis.from_url(config.redis_url), gateway.deliver_local
            )
            await broker.init()
            gateway.broker = broker
            broker_task = asyncio.create_task(broker.start())

        logger.info("Worker started!")
        try:
            yield
        finally:
            broker = gateway.broker
            if broker is not None:
                gateway.broker = None
                if broker_task is not None:
                    broker_task.cancel()
                    await asyncio.gather(broker_task, return_exceptions=True)
                await broker.cleanup()
                await broker.redis.aclose()

            if chat_store is not None:
                await chat_store.close()

            worker_id = get_proc_identity()
            if worker_id != 0:
                logger.warning("Stopping worker")

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None)
    app.state.gateway = gateway
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["*"],
        allow_headers=allow_headers + [config.identity_header],
        max_age=86400
    )

    @app.exception_handler(FunctionError)
    async def handle_error(request: Request, error: FunctionError):
        return error.response()

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, error: RequestValidationError
    ):
        if __debug__:
            logger.debug("Rejected %s: %s", request.url.path, error.errors())
        return response(
            error=True, error_msg="INCORRECT_PARAMS", status_code=400
        )

    @app.exception_handler(Exception)
    async def handle_500(request: Request, error: Exception):
        route_ = request.scope.get("route")
        endpoint = getattr(route_, "name", None) or "app"
        error_message = format_error_report(
            error,
            f"Endpoint: {endpoint}, "
            f"URL Rule: {getattr(route_, 'path', request.url.path)}",
            f"IP: {request.client.host if request.client else None}"
        )

        logger.exception(error)
        if config.error_log_dir is not None:
            await log_error_to_file(
                error_message, f"error_{endpoint}.log", config.error_log_dir
            )
        return response(
            error=True, error_msg="INTERNAL_SERVER_ERROR", status_code=500
        )

    @route(app, "/ping", methods=['POST', 'GET'])
    async def ping():
        return response(is_empty=True)

    load_all(app)
    load_websocket(app)

    return app


def main() -> None:
    config = GatewayConfig.from_env()
    setup_logger(debug=config.debug)
    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        loop="uvloop",
        ssl_keyfile=os.getenv("KEY_FILE"),
        ssl_certfile=os.getenv("CERT_FILE"),
        log_level="debug" if config.debug else "info"
    )


if __name__ == '__main__':
    main()
