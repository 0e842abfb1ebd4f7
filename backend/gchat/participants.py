from __future__ import annotations

from datetime import datetime
from typing import Any

import psycopg
from pydantic import BaseModel

from .db import PARTICIPANT_CONVERSATION_FKEY, PARTICIPANT_USER_FKEY, UNIQUE_PARTICIPANT, constraint_name
from .errors import ConversationNotFound, DuplicateParticipant, UserNotFound


class ConversationParticipant(BaseModel):
    conversation_id: int
    user_id: int
    created_at: datetime


class ParticipantModel:
    def __init__(self, db: Any):
        self.db = db

    def exists(self, user_id: int, conversation_id: int, conversation_type: str) -> bool:
        """Membership check that also pins the conversation type."""
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT EXISTS(
                        SELECT 1
                        FROM conversation_participants cp
                        JOIN conversations c ON cp.conversation_id = c.id
                        WHERE cp.user_id = %s AND cp.conversation_id = %s AND c.type = %s
                    ) AS found
                    """,
                    (user_id, conversation_id, conversation_type),
                )
                row = cur.fetchone()
        return bool(row["found"])

    def add(self, conversation_id: int, user_id: int) -> ConversationParticipant:
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO conversation_participants (conversation_id, user_id)
                        VALUES (%s, %s)
                        RETURNING conversation_id, user_id, created_at
                        """,
                        (conversation_id, user_id),
                    )
                    row = cur.fetchone()
        except psycopg.errors.UniqueViolation as exc:
            if constraint_name(exc) == UNIQUE_PARTICIPANT:
                raise DuplicateParticipant() from exc
            raise
        except psycopg.errors.ForeignKeyViolation as exc:
            name = constraint_name(exc)
            if name == PARTICIPANT_USER_FKEY:
                raise UserNotFound() from exc
            if name == PARTICIPANT_CONVERSATION_FKEY:
                raise ConversationNotFound() from exc
            raise

        return ConversationParticipant.model_validate(row)
