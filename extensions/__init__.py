from extensions.chat import load as load_chat
import typing as t
from logging import getLogger

_logger = getLogger("chatgateway.extensions")


__all__ = [
    "load_chat"
]


def load_all(*args: t.Any, **kwargs: t.Any) -> None:
    for name, value in globals().items():
        if name.startswith("load_") and name != "load_all":
            if callable(value):
                if __debug__:
                    _logger.debug(
                        f"Calling {name}..."
                    )
                value(*args, **kwargs)
