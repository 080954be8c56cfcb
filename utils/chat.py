import typing as t

import asyncpg

from core import FunctionError
from schemas import Attachment, Conversation, Message, UserPublic
from utils.database import AutoConnection


async def get_user(
    user_id: int, conn: AutoConnection
) -> UserPublic | None:
    db = await conn.create_conn()
    row = await db.fetchrow(
        "SELECT * FROM user_public_view WHERE id = $1", user_id
    )
    return t.cast(UserPublic, dict(row)) if row else None


async def update_online_status(
    user_id: int, is_online: bool, conn: AutoConnection
) -> None:
    db = await conn.create_conn()
    await db.execute(
        "UPDATE users SET is_online = $2 WHERE id = $1",
        user_id, is_online
    )


async def get_conversation(
    conversation_id: int, conn: AutoConnection
) -> Conversation | None:
    db = await conn.create_conn()
    row = await db.fetchrow(
        "SELECT * FROM conversation_view WHERE id = $1", conversation_id
    )
    return t.cast(Conversation, dict(row)) if row else None


async def get_conversations_for_user(
    user_id: int, conn: AutoConnection
) -> list[Conversation]:
    db = await conn.create_conn()
    query = """
        SELECT cv.*
        FROM conversation_view cv
        JOIN conversation_members cm ON cm.conversation_id = cv.id
        WHERE cm.user_id = $1
        ORDER BY COALESCE(
            (cv."lastMessage"->>'createdAt')::timestamptz,
            cv."createdAt"
        ) DESC
    """
    rows = await db.fetch(query, user_id)
    return [
        t.cast(Conversation, dict(row))
        for row in rows
    ]


async def get_member_ids(
    conversation_id: int, conn: AutoConnection
) -> list[int] | None:
    db = await conn.create_conn()
    query = """
        SELECT COALESCE(
            array_agg(cm.user_id ORDER BY cm.user_id)
                FILTER (WHERE cm.user_id IS NOT NULL),
            '{}'
        ) AS members
        FROM conversations c
        LEFT JOIN conversation_members cm ON cm.conversation_id = c.id
        WHERE c.id = $1
        GROUP BY c.id
    """
    row = await db.fetchrow(query, conversation_id)
    return list(row["members"]) if row else None


async def get_contact_ids(
    user_id: int, conn: AutoConnection
) -> list[int]:
    db = await conn.create_conn()
    query = """
        SELECT DISTINCT other.user_id
        FROM conversation_members mine
        JOIN conversation_members other
            ON other.conversation_id = mine.conversation_id
        WHERE mine.user_id = $1 AND other.user_id <> $1
        ORDER BY other.user_id
    """
    rows = await db.fetch(query, user_id)
    return [row["user_id"] for row in rows]


async def create_conversation(
    creator_id: int,
    member_ids: list[int],
    conn: AutoConnection,
    name: str | None = None,
    is_group: bool = False
) -> Conversation:
    user_ids = sorted({creator_id, *member_ids})
    db = await conn.create_conn()
    try:
        async with db.transaction():
            conversation_id = await db.fetchval(
                """
                INSERT INTO conversations (name, is_group)
                VALUES ($1, $2)
                RETURNING id
                """,
                name, is_group
            )
            await db.execute(
                """
                INSERT INTO conversation_members (conversation_id, user_id)
                SELECT $1, unnest($2::int[])
                """,
                conversation_id, user_ids
            )
    except asyncpg.exceptions.ForeignKeyViolationError:
        raise FunctionError("USER_NOT_FOUND", 404, None)

    conversation = await get_conversation(conversation_id, conn)
    return t.cast(Conversation, conversation)


async def get_message(
    message_id: int, conn: AutoConnection
) -> Message | None:
    db = await conn.create_conn()
    row = await db.fetchrow(
        "SELECT * FROM message_view WHERE id = $1", message_id
    )
    return t.cast(Message, dict(row)) if row else None


async def get_messages_for_conversation(
    conversation_id: int,
    conn: AutoConnection,
    limit: int = 50,
    before: int | None = None
) -> list[Message]:
    db = await conn.create_conn()
    query = """
        SELECT *
        FROM message_view
        WHERE "conversationId" = $1
          AND ($2::int IS NULL OR id < $2)
        ORDER BY id DESC
        LIMIT $3
    """
    rows = await db.fetch(query, conversation_id, before, limit)
    return [
        t.cast(Message, dict(row))
        for row in reversed(rows)
    ]


async def create_message(
    conversation_id: int,
    sender_id: int,
    content: str,
    attachments: list[Attachment],
    conn: AutoConnection
) -> Message:
    db = await conn.create_conn()
    message_id = await db.fetchval(
        """
        INSERT INTO messages (conversation_id, sender_id, content, attachments)
        VALUES ($1, $2, $3, $4)
        RETURNING id
        """,
        conversation_id, sender_id, content, attachments
    )
    message = await get_message(message_id, conn)
    return t.cast(Message, message)


async def update_message(
    message_id: int, content: str, conn: AutoConnection
) -> Message | None:
    db = await conn.create_conn()
    updated = await db.fetchval(
        """
        UPDATE messages
        SET content = $2, updated_at = NOW(), is_edited = TRUE
        WHERE id = $1
        RETURNING id
        """,
        message_id, content
    )
    if updated is None:
        return None
    return await get_message(message_id, conn)


async def add_reaction(
    message_id: int, user_id: int, emoji: str, conn: AutoConnection
) -> Message | None:
    db = await conn.create_conn()
    # The containment check runs after the row lock, so a duplicate
    # concurrent add sees the first one's write.
    await db.execute(
        """
        UPDATE messages
        SET reactions = reactions || $2::jsonb
        WHERE id = $1 AND NOT reactions @> $2::jsonb
        """,
        message_id, [{"emoji": emoji, "userId": user_id}]
    )
    return await get_message(message_id, conn)


async def remove_reaction(
    message_id: int, user_id: int, emoji: str, conn: AutoConnection
) -> Message | None:
    db = await conn.create_conn()
    await db.execute(
        """
        UPDATE messages
        SET reactions = COALESCE((
            SELECT jsonb_agg(r)
            FROM jsonb_array_elements(reactions) AS r
            WHERE NOT (r->>'emoji' = $2 AND (r->>'userId')::int = $3)
        ), '[]'::jsonb)
        WHERE id = $1
          AND reactions @> jsonb_build_array(
              jsonb_build_object('emoji', $2::text, 'userId', $3::int)
          )
        """,
        message_id, emoji, user_id
    )
    return await get_message(message_id, conn)


class ChatStore:
    """Store backed by the PostgreSQL pool opened at startup."""

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self.pool = pool

    def _conn(self) -> AutoConnection:
        if self.pool is None:
            raise RuntimeError("ChatStore used before the pool was opened")
        return AutoConnection(self.pool)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def get_user(self, user_id: int) -> UserPublic | None:
        async with self._conn() as conn:
            return await get_user(user_id, conn)

    async def update_online_status(
        self, user_id: int, is_online: bool
    ) -> None:
        async with self._conn() as conn:
            await update_online_status(user_id, is_online, conn)

    async def get_conversation(
        self, conversation_id: int
    ) -> Conversation | None:
        async with self._conn() as conn:
            return await get_conversation(conversation_id, conn)

    async def get_conversations_for_user(
        self, user_id: int
    ) -> list[Conversation]:
        async with self._conn() as conn:
            return await get_conversations_for_user(user_id, conn)

    async def get_member_ids(self, conversation_id: int) -> list[int] | None:
        async with self._conn() as conn:
            return await get_member_ids(conversation_id, conn)

    async def get_contact_ids(self, user_id: int) -> list[int]:
        async with self._conn() as conn:
            return await get_contact_ids(user_id, conn)

    async def create_conversation(
        self, creator_id: int, member_ids: list[int],
        name: str | None = None, is_group: bool = False
    ) -> Conversation:
        async with self._conn() as conn:
            return await create_conversation(
                creator_id, member_ids, conn, name, is_group
            )

    async def get_message(self, message_id: int) -> Message | None:
        async with self._conn() as conn:
            return await get_message(message_id, conn)

    async def get_messages_for_conversation(
        self, conversation_id: int,
        limit: int = 50, before: int | None = None
    ) -> list[Message]:
        async with self._conn() as conn:
            return await get_messages_for_conversation(
                conversation_id, conn, limit, before
            )

    async def create_message(
        self, conversation_id: int, sender_id: int,
        content: str, attachments: list[Attachment]
    ) -> Message:
        async with self._conn() as conn:
            return await create_message(
                conversation_id, sender_id, content, attachments, conn
            )

    async def update_message(
        self, message_id: int, content: str
    ) -> Message | None:
        async with self._conn() as conn:
            return await update_message(message_id, content, conn)

    async def add_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> Message | None:
        async with self._conn() as conn:
            return await add_reaction(message_id, user_id, emoji, conn)

    async def remove_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> Message | None:
        async with self._conn() as conn:
            return await remove_reaction(message_id, user_id, emoji, conn)
