from dataclasses import dataclass
import datetime
from typing import overload
import typing as t
import orjson
from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI
from starlette.responses import Response
import json
import os
import multiprocessing
import logging
import traceback
import aiofiles
from colorama import Fore, Style, init

_logger = logging.getLogger("chatgateway")
worker_count = int(os.getenv('_WORKER_COUNT', '1'))
server_id = int(os.getenv("SERVER_ID", "0"))
total_servers = int(os.getenv("TOTAL_SERVERS", "1"))
init(autoreset=True)

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    auth_timeout: float = 15.0
    send_queue_size: int = 128
    identity_header: str = "X-User-Id"
    redis_url: str | None = None
    error_log_dir: str | None = "logs"
    cors_origins: tuple[str, ...] = ("*",)
    postgres_config: str = "config/postgres.json"
    host: str = "0.0.0.0"
    port: int = 6169
    debug: bool = False

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            auth_timeout=float(os.getenv("AUTH_TIMEOUT", "15")),
            send_queue_size=int(os.getenv("SEND_QUEUE_SIZE", "128")),
            identity_header=os.getenv("IDENTITY_HEADER", "X-User-Id"),
            redis_url=os.getenv("REDIS_URL") or None,
            error_log_dir=os.getenv("ERROR_LOG_DIR", "logs") or None,
            cors_origins=tuple(
                o.strip() for o in origins.split(",") if o.strip()
            ),
            postgres_config=os.getenv(
                "POSTGRES_CONFIG", "config/postgres.json"
            ),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "6169")),
            debug=_env_bool("DEBUG")
        )

    def load_postgres_config(self) -> dict:
        with open(self.postgres_config) as f:
            return json.load(f)


@overload
def response(
    *, data: t.Mapping = ...
) -> Response:
    ...


@overload
def response(
    *, error: t.Literal[True], data: t.Mapping = {},
    error_msg: str,
    **kwargs
) -> Response:
    ...


@overload
def response(
    *, is_empty: t.Literal[True], **kwargs
) -> Response:
    ...


def response(
    *, error: bool | None = None,
    data: t.Mapping = {},
    error_msg: str | None = None,
    keep_none: bool = False,
    is_empty: bool = False,
    **kwargs
) -> Response:
    if is_empty:
        return Response(status_code=kwargs.pop("status_code", 204), **kwargs)

    if not keep_none:
        data = remove_none_values(data)

    response_data = {
        "success": not error,
        "data": data
    }
    if error_msg:
        response_data["error"] = error_msg

    response = Response(
        orjson.dumps(response_data),
        media_type="application/json",
        **kwargs
    )
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"

    return response


def remove_none_values(d: t.Any) -> t.Any:
    if isinstance(d, dict):
        return {k: remove_none_values(v) for k, v in d.items()
                if v is not None}
    elif isinstance(d, list):
        return [remove_none_values(v) for v in d]
    else:
        return d


class FunctionError(Exception):
    def __init__(
        self, message: str | None, code: int, data: dict | None = None,
        *args
    ) -> None:
        self.message = message or "UNKNOWN_ERROR"
        self.code = code
        self.data = data
        super().__init__(message, *args)

    def response(self) -> Response:
        return response(
            error=True,
            data=self.data or {},
            error_msg=self.message,
            status_code=self.code
        )


def format_error_report(
    error: BaseException, *lines: str
) -> str:
    current_time = (
        datetime.datetime.now(datetime.timezone.utc)
        .strftime('%Y-%m-%d %H:%M:%S')
    )
    tb_str = ''.join(
        traceback.format_exception(type(error), error, error.__traceback__)
    )
    return (
        "---\n" +
        f"Internal Server Error ({current_time})\n" +
        "".join(f"{line}\n" for line in lines) +
        f"{tb_str}" +
        "---\n\n"
    )


async def log_error_to_file(
    message: str, file: str, directory: str = "logs"
) -> None:
    os.makedirs(directory, exist_ok=True)
    async with aiofiles.open(os.path.join(directory, file), mode="a") as f:
        await f.write(message)


def get_proc_identity() -> int:
    _id = multiprocessing.current_process()._identity
    if _id:
        return _id[0]
    else:
        return 0


def is_systemd() -> bool:
    return os.getenv("INVOCATION_ID") is not None


class ColoredFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: Fore.WHITE,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.MAGENTA,
    }

    def format(self, record: logging.LogRecord) -> str:
        log_color = self.COLORS.get(record.levelno, Fore.WHITE)
        levelname = record.levelname[0]

        record_name = record.name.removeprefix("chatgateway.")

        formatted_message = super().format(record)

        return (
            log_color +
            f"{levelname}{Style.BRIGHT} [{record_name}] " +
            formatted_message +
            Style.RESET_ALL
        )


def setup_logger(
    logger: logging.Logger | None = None,
    debug: bool = True
) -> logging.Logger:
    logger = logger or _logger

    if any(isinstance(h.formatter, ColoredFormatter)
           for h in logger.handlers):
        return logger

    handler = logging.StreamHandler()

    id = f"[{get_proc_identity()}/{worker_count}|" \
         f"{server_id + 1}/{total_servers}]"
    if is_systemd():
        fmt = f'{id}: %(message)s'
    else:
        fmt = f'%(asctime)s [%(process)d] {id}: %(message)s'

    formatter = ColoredFormatter(fmt, datefmt='%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)

    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(handler)

    return logger


def route(_app: FastAPI | APIRouter, url_rule: str, **kwargs):
    url_rule = f"/v1/{url_rule.lstrip('/')}"
    return _app.api_route(url_rule, **kwargs)


def are_all_keys_present(source: t.Iterable[str], target: dict) -> bool:
    return all(key in target for key in source)
