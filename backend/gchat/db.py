from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import Settings

LOGGER = logging.getLogger("gchat.db")

# Constraint names the core classifies; keep in sync with SCHEMA below.
USERS_USERNAME_KEY = "users_username_key"
USERS_EMAIL_KEY = "users_email_key"
UNIQUE_PARTICIPANT = "unique_participant"
PARTICIPANT_USER_FKEY = "conversation_participants_user_id_fkey"
PARTICIPANT_CONVERSATION_FKEY = "conversation_participants_conversation_id_fkey"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        bio TEXT,
        password_hash TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        version BIGINT NOT NULL DEFAULT 1,
        CONSTRAINT users_username_key UNIQUE (username),
        CONSTRAINT users_email_key UNIQUE (email)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS tokens (
        hash BYTEA PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expiry TIMESTAMPTZ NOT NULL,
        scope TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id BIGSERIAL PRIMARY KEY,
        type TEXT NOT NULL CHECK (type IN ('private', 'group')),
        -- canonical "<min user id>:<max user id>" pair, private rows only
        private_key TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT conversations_private_key_key UNIQUE (private_key),
        CONSTRAINT conversations_private_key_check CHECK ((type = 'private') = (private_key IS NOT NULL))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS group_metadata (
        conversation_id BIGINT PRIMARY KEY REFERENCES conversations(id) ON DELETE CASCADE,
        owner_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT unique_participant UNIQUE (conversation_id, user_id),
        CONSTRAINT conversation_participants_conversation_id_fkey
            FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE,
        CONSTRAINT conversation_participants_user_id_fkey
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_messages (
        id BIGSERIAL PRIMARY KEY,
        conversation_id BIGINT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        sender_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        type TEXT NOT NULL CHECK (type IN ('text', 'image', 'video', 'audio', 'file')),
        content TEXT NOT NULL CHECK (octet_length(content) <= 500),
        replied_message_id BIGINT REFERENCES conversation_messages(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_tokens_user_scope ON tokens(user_id, scope);",
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON conversation_participants(user_id);",
    """
    CREATE INDEX IF NOT EXISTS idx_messages_conversation_created_id
        ON conversation_messages(conversation_id, created_at DESC, id DESC);
    """,
)


class Database:
    """Bounded connection pool; every query runs under a server-side statement timeout.

    ``connection()`` commits when the block exits cleanly and rolls back when it
    raises, so a block is one transaction. A stalled store surfaces as
    ``psycopg.errors.QueryCanceled`` or ``psycopg_pool.PoolTimeout``; neither is
    retried here. Handlers run in the threadpool, so a client that disconnects
    does not cancel its query; the statement timeout bounds that work.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.pool = ConnectionPool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=settings.db_pool_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
                "connect_timeout": max(1, int(settings.db_pool_timeout_seconds)),
            },
            open=False,
            name="gchat",
        )

    def open(self) -> None:
        self.pool.open(wait=True, timeout=self.settings.db_pool_timeout_seconds)
        LOGGER.info("database pool opened (max_size=%s)", self.settings.db_pool_max_size)

    def close(self) -> None:
        self.pool.close()
        LOGGER.info("database pool closed")

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        with self.pool.connection() as conn:
            yield conn


def init_db(database: Database) -> None:
    """Create the schema if it does not exist yet."""
    with database.connection() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA:
                cur.execute(statement)
    LOGGER.info("database schema ensured")


def constraint_name(exc: psycopg.Error) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None)
