from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import RecordNotFound
from .users import USER_COLUMNS, User
from .validator import Validator, valid_utf8

SCOPE_ACCOUNT_ACTIVATION = "account:activation"
SCOPE_AUTHENTICATION_ACCESS = "auth:access"

ACTIVATION_TOKEN_TTL = timedelta(hours=1)
ACCESS_TOKEN_TTL = timedelta(hours=24)

TOKEN_RANDOM_BYTES = 16
TOKEN_PLAINTEXT_LENGTH = 26


class Token(BaseModel):
    plaintext: str = Field(serialization_alias="value")
    hash: bytes = Field(exclude=True, repr=False)
    user_id: int
    expiry: datetime
    scope: str


def hash_token(plaintext: str) -> bytes:
    return hashlib.sha256(plaintext.encode("utf-8", "surrogatepass")).digest()


def generate_token(user_id: int, ttl: timedelta, scope: str) -> Token:
    random_bytes = secrets.token_bytes(TOKEN_RANDOM_BYTES)
    plaintext = base64.b32encode(random_bytes).decode("ascii").rstrip("=")
    return Token(
        plaintext=plaintext,
        hash=hash_token(plaintext),
        user_id=user_id,
        expiry=datetime.now(timezone.utc) + ttl,
        scope=scope,
    )


def validate_token_plaintext(v: Validator, plaintext: str) -> None:
    v.check(plaintext != "", "token", "must be provided")
    v.check(valid_utf8(plaintext), "token", "must be valid UTF-8")
    v.check(len(plaintext) == TOKEN_PLAINTEXT_LENGTH, "token", "must be 26 bytes long")


class TokenModel:
    """Opaque bearer tokens. Only the SHA-256 of a plaintext is ever stored."""

    def __init__(self, db: Any):
        self.db = db

    def issue(self, user_id: int, ttl: timedelta, scope: str) -> Token:
        token = generate_token(user_id, ttl, scope)
        self.insert(token)
        return token

    def insert(self, token: Token) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO tokens (user_id, hash, expiry, scope) VALUES (%s, %s, %s, %s)",
                    (token.user_id, token.hash, token.expiry, token.scope),
                )

    def resolve(self, plaintext: str, scope: str, now: Optional[datetime] = None) -> User:
        """Return the owner of a live token in ``scope``.

        An unknown token, a token of another scope and an expired token all
        raise the same ``RecordNotFound``.
        """
        now = now or datetime.now(timezone.utc)
        columns = ", ".join(f"u.{c.strip()}" for c in USER_COLUMNS.split(","))
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {columns}
                    FROM users u
                    INNER JOIN tokens t ON u.id = t.user_id
                    WHERE t.hash = %s
                      AND t.scope = %s
                      AND t.expiry > %s
                    """,
                    (hash_token(plaintext), scope, now),
                )
                row = cur.fetchone()
        if row is None:
            raise RecordNotFound()
        return User.model_validate(row)

    def revoke_all(self, user_id: int, scope: str) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM tokens WHERE user_id = %s AND scope = %s", (user_id, scope))
