"""PostgreSQL message and conversation persistence."""

import json
from typing import Any, Dict, Optional
from uuid import UUID

from ..errors import PersistenceFailed
from .database import Database


class PostgresMessageStore:
    """Append-only assistant messages plus the parent conversation's timestamp.

    Both writes only touch conversations owned by the caller.
    """

    def __init__(self, database: Database):
        self.database = database

    async def insert_message(
        self,
        conversation_id: UUID,
        user_id: str,
        content: str,
        tokens_used: int,
        model: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        async with self.database.connection() as conn:
            message_id = await conn.fetchval("""
                INSERT INTO messages
                (conversation_id, role, content, tokens_used, model, metadata)
                SELECT $1::uuid, 'assistant', $3::text, $4::integer, $5::varchar, $6::jsonb
                WHERE EXISTS (
                    SELECT 1 FROM conversations WHERE id = $1 AND user_id = $2
                )
                RETURNING id
            """, conversation_id, user_id, content, tokens_used, model, json.dumps(metadata or {}))

        if message_id is None:
            raise PersistenceFailed(f"conversation {conversation_id} not found for caller")
        return message_id

    async def touch_conversation(self, conversation_id: UUID, user_id: str) -> None:
        async with self.database.connection() as conn:
            await conn.execute("""
                UPDATE conversations SET updated_at = NOW()
                WHERE id = $1 AND user_id = $2
            """, conversation_id, user_id)
