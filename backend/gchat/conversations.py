from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel

from .errors import InvariantViolation, RecordNotFound
from .messages import ConversationMessage, message_from_row
from .pagination import Filters, PaginationMetadata, calculate_pagination_metadata, total_from_rows

TYPE_PRIVATE = "private"
TYPE_GROUP = "group"

CONVERSATION_COLUMNS = "c.id, c.type, g.name, g.owner_id, c.created_at, c.updated_at"


class Conversation(BaseModel):
    id: int
    type: str
    # name and owner are set for groups only
    name: Optional[str] = None
    owner_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationPreview(Conversation):
    # the other participant of a private conversation
    peer_id: Optional[int] = None
    last_message: Optional[ConversationMessage] = None


def private_key(user_a: int, user_b: int) -> str:
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


class ConversationModel:
    def __init__(self, db: Any):
        self.db = db

    def find_private_between(self, user_a: int, user_b: int) -> Conversation:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.id, c.type, c.created_at, c.updated_at
                    FROM conversations c
                    JOIN conversation_participants pa ON pa.conversation_id = c.id AND pa.user_id = %s
                    JOIN conversation_participants pb ON pb.conversation_id = c.id AND pb.user_id = %s
                    WHERE c.type = 'private'
                      AND (SELECT count(*) FROM conversation_participants p WHERE p.conversation_id = c.id) = 2
                    ORDER BY c.id
                    LIMIT 1
                    """,
                    (user_a, user_b),
                )
                row = cur.fetchone()
        if row is None:
            raise RecordNotFound()
        return Conversation.model_validate(row)

    def create_private_between(self, user_a: int, user_b: int) -> Conversation:
        """Create the private conversation of a pair, or return the one a racing caller made.

        The conversation row and both participant rows commit together. The
        unique canonical pair key lets exactly one concurrent insert win; the
        others block on it and then read the winner's row.
        """
        if user_a == user_b:
            raise InvariantViolation("a private conversation needs two distinct users")

        key = private_key(user_a, user_b)
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO conversations (type, private_key)
                    VALUES ('private', %s)
                    ON CONFLICT (private_key) DO NOTHING
                    RETURNING id, type, created_at, updated_at
                    """,
                    (key,),
                )
                row = cur.fetchone()
                if row is None:
                    cur.execute(
                        "SELECT id, type, created_at, updated_at FROM conversations WHERE private_key = %s",
                        (key,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise RecordNotFound()
                    return Conversation.model_validate(row)

                for user_id in (user_a, user_b):
                    cur.execute(
                        "INSERT INTO conversation_participants (conversation_id, user_id) VALUES (%s, %s)",
                        (row["id"], user_id),
                    )
        return Conversation.model_validate(row)

    def get_or_create_private_between(self, user_a: int, user_b: int) -> Conversation:
        try:
            return self.find_private_between(user_a, user_b)
        except RecordNotFound:
            return self.create_private_between(user_a, user_b)

    def create_group(self, owner_id: int, name: str) -> Conversation:
        """Create a group with its metadata; the owner is enrolled as its first participant."""
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO conversations (type)
                    VALUES ('group')
                    RETURNING id, type, created_at, updated_at
                    """
                )
                row = cur.fetchone()
                cur.execute(
                    "INSERT INTO group_metadata (conversation_id, owner_id, name) VALUES (%s, %s, %s)",
                    (row["id"], owner_id, name),
                )
                cur.execute(
                    "INSERT INTO conversation_participants (conversation_id, user_id) VALUES (%s, %s)",
                    (row["id"], owner_id),
                )
        return Conversation(name=name, owner_id=owner_id, **row)

    def exists(self, conversation_id: int, conversation_type: str) -> bool:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT EXISTS(SELECT 1 FROM conversations WHERE id = %s AND type = %s) AS found",
                    (conversation_id, conversation_type),
                )
                row = cur.fetchone()
        return bool(row["found"])

    def get(self, conversation_id: int, conversation_type: str) -> Conversation:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {CONVERSATION_COLUMNS}
                    FROM conversations c
                    LEFT JOIN group_metadata g ON g.conversation_id = c.id
                    WHERE c.id = %s AND c.type = %s
                    """,
                    (conversation_id, conversation_type),
                )
                row = cur.fetchone()
        if row is None:
            raise RecordNotFound()
        return Conversation.model_validate(row)

    def list_with_preview(
        self, user_id: int, filters: Filters
    ) -> Tuple[List[ConversationPreview], PaginationMetadata]:
        """Conversations of a user, most recent activity first, each with its latest message."""
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT count(*) OVER() AS total_records,
                        {CONVERSATION_COLUMNS},
                        peer.user_id AS peer_id,
                        lm.id AS lm_id, lm.conversation_id AS lm_conversation_id,
                        lm.sender_id AS lm_sender_id, lm.type AS lm_type, lm.content AS lm_content,
                        lm.replied_message_id AS lm_replied_message_id,
                        lm.created_at AS lm_created_at, lm.updated_at AS lm_updated_at
                    FROM conversation_participants p
                    JOIN conversations c ON c.id = p.conversation_id
                    LEFT JOIN group_metadata g ON g.conversation_id = c.id
                    LEFT JOIN LATERAL (
                        SELECT op.user_id
                        FROM conversation_participants op
                        WHERE op.conversation_id = c.id AND op.user_id <> p.user_id AND c.type = 'private'
                        LIMIT 1
                    ) peer ON TRUE
                    LEFT JOIN LATERAL (
                        SELECT m.*
                        FROM conversation_messages m
                        WHERE m.conversation_id = c.id
                        ORDER BY m.created_at DESC, m.id DESC
                        LIMIT 1
                    ) lm ON TRUE
                    WHERE p.user_id = %s
                    ORDER BY COALESCE(lm.created_at, c.created_at) DESC, c.id DESC
                    LIMIT %s OFFSET %s
                    """,
                    (user_id, filters.limit(), filters.offset()),
                )
                rows = cur.fetchall()

        items = [
            ConversationPreview(
                id=row["id"],
                type=row["type"],
                name=row["name"],
                owner_id=row["owner_id"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
                peer_id=row["peer_id"],
                last_message=message_from_row(row, "lm_"),
            )
            for row in rows
        ]
        metadata = calculate_pagination_metadata(total_from_rows(rows), filters.page, filters.page_size)
        return items, metadata
