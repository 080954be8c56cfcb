import logging

from realtime.base import Connection

logger = logging.getLogger("chatgateway.registry")


class ConnectionRegistry:
    """Maps each authenticated user to its single live connection.

    Every method runs without suspending, so readers on the event loop
    never observe a half-replaced entry.
    """

    def __init__(self) -> None:
        self.connections: dict[int, Connection] = {}

    def register(
        self, user_id: int, connection: Connection
    ) -> Connection | None:
        previous = self.connections.get(user_id)
        self.connections[user_id] = connection

        if __debug__ and previous is not None \
                and previous is not connection:
            logger.debug(
                "User %s re-authenticated, orphaning %r",
                user_id, previous
            )
        return previous

    def unregister(self, user_id: int, connection: Connection) -> bool:
        if self.connections.get(user_id) is not connection:
            return False
        del self.connections[user_id]
        return True

    def lookup(self, user_id: int) -> Connection | None:
        return self.connections.get(user_id)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self.connections

    def __len__(self) -> int:
        return len(self.connections)
