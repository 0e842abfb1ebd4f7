from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel

from .pagination import Filters, PaginationMetadata, calculate_pagination_metadata, total_from_rows
from .users import UserProfile
from .validator import Validator, byte_length, valid_utf8

TYPE_TEXT = "text"
TYPE_IMAGE = "image"
TYPE_VIDEO = "video"
TYPE_AUDIO = "audio"
TYPE_FILE = "file"
MESSAGE_TYPES = (TYPE_TEXT, TYPE_IMAGE, TYPE_VIDEO, TYPE_AUDIO, TYPE_FILE)

MAX_CONTENT_BYTES = 500

DEFAULT_MESSAGE_SORT = "-created_at"
GROUP_MESSAGE_SORT_SAFE_LIST = ("created_at", "-created_at", "updated_at", "-updated_at")

REPLY_COLUMNS = """
    r.id AS r_id, r.conversation_id AS r_conversation_id, r.sender_id AS r_sender_id,
    r.type AS r_type, r.content AS r_content, r.replied_message_id AS r_replied_message_id,
    r.created_at AS r_created_at, r.updated_at AS r_updated_at
"""


class ConversationMessage(BaseModel):
    id: Optional[int] = None
    conversation_id: Optional[int] = None
    sender_id: Optional[int] = None
    type: str
    content: str
    replied_message_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageWithReply(ConversationMessage):
    replied_message: Optional[ConversationMessage] = None


class GroupMessage(MessageWithReply):
    sender: UserProfile


def validate_message_body(v: Validator, message_type: str, content: str) -> None:
    v.check(message_type != "", "type", "must be provided")
    v.check(message_type in MESSAGE_TYPES, "type", "must be one of text, image, video, audio, or file")

    v.check(content != "", "content", "must be provided")
    v.check(valid_utf8(content), "content", "must be valid UTF-8")
    v.check(byte_length(content) <= MAX_CONTENT_BYTES, "content", "must not be more than 500 bytes long")


def validate_message(v: Validator, message: ConversationMessage) -> None:
    v.check(bool(message.conversation_id), "conversation_id", "must be provided")
    v.check(bool(message.sender_id), "sender_id", "must be provided")
    validate_message_body(v, message.type, message.content)


def message_from_row(row: dict, prefix: str = "") -> Optional[ConversationMessage]:
    if row.get(prefix + "id") is None:
        return None
    return ConversationMessage(
        id=row[prefix + "id"],
        conversation_id=row[prefix + "conversation_id"],
        sender_id=row[prefix + "sender_id"],
        type=row[prefix + "type"],
        content=row[prefix + "content"],
        replied_message_id=row[prefix + "replied_message_id"],
        created_at=row[prefix + "created_at"],
        updated_at=row[prefix + "updated_at"],
    )


class MessageModel:
    def __init__(self, db: Any):
        self.db = db

    def insert(self, message: ConversationMessage) -> ConversationMessage:
        """Store a message; the caller has already checked any reply reference."""
        v = Validator()
        validate_message(v, message)
        v.raise_if_invalid()

        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO conversation_messages (conversation_id, sender_id, type, content, replied_message_id)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, created_at, updated_at
                    """,
                    (
                        message.conversation_id,
                        message.sender_id,
                        message.type,
                        message.content,
                        message.replied_message_id,
                    ),
                )
                row = cur.fetchone()

        message.id = row["id"]
        message.created_at = row["created_at"]
        message.updated_at = row["updated_at"]
        return message

    def list_for_private(
        self, conversation_id: int, filters: Filters
    ) -> Tuple[List[MessageWithReply], PaginationMetadata]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT count(*) OVER() AS total_records,
                        m.id, m.conversation_id, m.sender_id, m.type, m.content,
                        m.replied_message_id, m.created_at, m.updated_at,
                        {REPLY_COLUMNS}
                    FROM conversation_messages m
                    LEFT JOIN conversation_messages r ON m.replied_message_id = r.id
                    WHERE m.conversation_id = %s
                    ORDER BY m.created_at DESC, m.id DESC
                    LIMIT %s OFFSET %s
                    """,
                    (conversation_id, filters.limit(), filters.offset()),
                )
                rows = cur.fetchall()

        messages = [
            MessageWithReply(
                **message_from_row(row).model_dump(),
                replied_message=message_from_row(row, "r_"),
            )
            for row in rows
        ]
        metadata = calculate_pagination_metadata(total_from_rows(rows), filters.page, filters.page_size)
        return messages, metadata

    def list_for_group(
        self, conversation_id: int, filters: Filters
    ) -> Tuple[List[GroupMessage], PaginationMetadata]:
        if filters.sort:
            column, direction = filters.sort_column(), filters.sort_direction()
        else:
            column, direction = "created_at", "DESC"

        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT count(*) OVER() AS total_records,
                        m.id, m.conversation_id, m.sender_id, m.type, m.content,
                        m.replied_message_id, m.created_at, m.updated_at,
                        u.username AS sender_username, u.email AS sender_email,
                        u.bio AS sender_bio, u.is_active AS sender_is_active,
                        {REPLY_COLUMNS}
                    FROM conversation_messages m
                    INNER JOIN users u ON u.id = m.sender_id
                    LEFT JOIN conversation_messages r ON m.replied_message_id = r.id
                    WHERE m.conversation_id = %s
                    ORDER BY m.{column} {direction}, m.id {direction}
                    LIMIT %s OFFSET %s
                    """,
                    (conversation_id, filters.limit(), filters.offset()),
                )
                rows = cur.fetchall()

        messages = [
            GroupMessage(
                **message_from_row(row).model_dump(),
                replied_message=message_from_row(row, "r_"),
                sender=UserProfile(
                    id=row["sender_id"],
                    username=row["sender_username"],
                    email=row["sender_email"],
                    bio=row["sender_bio"],
                    is_active=row["sender_is_active"],
                ),
            )
            for row in rows
        ]
        metadata = calculate_pagination_metadata(total_from_rows(rows), filters.page, filters.page_size)
        return messages, metadata

    def belongs_to_conversation(self, message_id: int, conversation_id: int, conversation_type: str) -> bool:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT EXISTS(
                        SELECT 1
                        FROM conversation_messages m
                        JOIN conversations c ON c.id = m.conversation_id
                        WHERE m.id = %s AND m.conversation_id = %s AND c.type = %s
                    ) AS found
                    """,
                    (message_id, conversation_id, conversation_type),
                )
                row = cur.fetchone()
        return bool(row["found"])
