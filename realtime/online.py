import logging

from realtime.base import Connection, Deliver, Store
from realtime.envelopes import user_status_event
from realtime.registry import ConnectionRegistry

logger = logging.getLogger("chatgateway.presence")


class PresenceTracker:
    def __init__(
        self,
        registry: ConnectionRegistry,
        store: Store,
        deliver: Deliver
    ) -> None:
        self.registry = registry
        self.store = store
        self.deliver = deliver

    async def send_online(self, user_id: int, connection: Connection) -> bool:
        """Register the connection; broadcast only if the user was offline."""
        previous = self.registry.register(user_id, connection)
        if previous is not None:
            if __debug__:
                logger.debug("User %s is already online", user_id)
            return False

        await self._broadcast(user_id, True)
        return True

    async def send_offline(
        self, user_id: int, connection: Connection
    ) -> bool:
        if not self.registry.unregister(user_id, connection):
            if __debug__:
                logger.debug(
                    "Ignoring close of orphaned %r", connection
                )
            return False

        await self._broadcast(user_id, False)
        return True

    async def _broadcast(self, user_id: int, is_online: bool) -> None:
        try:
            if await self.store.get_user(user_id) is None:
                logger.warning("Unknown user %s, skipping status", user_id)
                return
            await self.store.update_online_status(user_id, is_online)
            contacts = await self.store.get_contact_ids(user_id)
        except Exception as e:
            logger.exception(e)
            return

        if __debug__:
            logger.debug(
                "User %s is now %s, notifying %s contacts",
                user_id, "online" if is_online else "offline", len(contacts)
            )

        event = user_status_event(user_id, is_online)
        for contact_id in contacts:
            if contact_id == user_id:
                continue
            try:
                await self.deliver(contact_id, event)
            except Exception as e:
                logger.exception(e)
