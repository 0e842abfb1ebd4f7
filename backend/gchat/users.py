from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Any, Optional

import psycopg
from pydantic import BaseModel, Field

from .db import USERS_EMAIL_KEY, USERS_USERNAME_KEY, constraint_name
from .errors import DuplicateEmail, DuplicateUsername, EditConflict, InvariantViolation, RecordNotFound
from .validator import EMAIL_RE, Validator, byte_length, valid_utf8

PBKDF2_ITERATIONS = 200_000

USER_COLUMNS = (
    "id, username, email, bio, password_hash, is_active, email_verified_at, "
    "created_at, updated_at, version"
)


class UserProfile(BaseModel):
    """Public fields of a user, as shown next to group messages."""

    id: int
    username: str
    email: str
    bio: Optional[str] = None
    is_active: bool = False


class User(UserProfile):
    id: Optional[int] = None
    password_hash: Optional[str] = Field(default=None, exclude=True, repr=False)
    email_verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = Field(default=None, exclude=True)
    updated_at: Optional[datetime] = Field(default=None, exclude=True)
    version: int = Field(default=0, exclude=True)

    def set_password(self, plaintext: str) -> None:
        self.password_hash = hash_password(plaintext)

    def password_matches(self, plaintext: str) -> bool:
        if not self.password_hash:
            return False
        return verify_password(plaintext, self.password_hash)


# =========================
# Password hashing (PBKDF2)
# =========================
def hash_password(password: str, salt: Optional[str] = None) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    secret = password.encode("utf-8", "surrogatepass")
    dk = hashlib.pbkdf2_hmac("sha256", secret, salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, _, salt, _ = stored.split("$", 3)
    except ValueError:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored)


# =========================
# Validation
# =========================
def validate_email(v: Validator, email: str) -> None:
    v.check(email != "", "email", "must be provided")
    v.check(bool(EMAIL_RE.match(email)), "email", "must be a valid email address")


def validate_password_plaintext(v: Validator, password: str) -> None:
    v.check(password != "", "password", "must be provided")
    v.check(valid_utf8(password), "password", "must be valid UTF-8")
    v.check(byte_length(password) >= 8, "password", "must be at least 8 bytes long")
    v.check(byte_length(password) <= 72, "password", "must not be more than 72 bytes long")


def validate_user(v: Validator, user: User, password: Optional[str] = None) -> None:
    v.check(user.username != "", "username", "must be provided")
    v.check(valid_utf8(user.username), "username", "must be valid UTF-8")
    v.check(byte_length(user.username) <= 50, "username", "must not be more than 50 bytes long")
    validate_email(v, user.email)
    if user.bio is not None:
        v.check(valid_utf8(user.bio), "bio", "must be valid UTF-8")
        v.check(byte_length(user.bio) <= 500, "bio", "must not be more than 500 bytes long")
    if password is not None:
        validate_password_plaintext(v, password)

    if not user.password_hash:
        raise InvariantViolation("missing password hash for user")


def _raise_duplicate(exc: psycopg.errors.UniqueViolation) -> None:
    name = constraint_name(exc)
    if name == USERS_EMAIL_KEY:
        raise DuplicateEmail() from exc
    if name == USERS_USERNAME_KEY:
        raise DuplicateUsername() from exc
    raise exc


class UserModel:
    def __init__(self, db: Any):
        self.db = db

    def insert(self, user: User) -> User:
        if not user.password_hash:
            raise InvariantViolation("missing password hash for user")

        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO users (username, email, bio, password_hash, is_active)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING id, created_at, updated_at, version
                        """,
                        (user.username, user.email, user.bio, user.password_hash, user.is_active),
                    )
                    row = cur.fetchone()
        except psycopg.errors.UniqueViolation as exc:
            _raise_duplicate(exc)

        user.id = row["id"]
        user.created_at = row["created_at"]
        user.updated_at = row["updated_at"]
        user.version = row["version"]
        return user

    def get(self, user_id: int) -> User:
        return self._get_one(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s", (user_id,))

    def get_by_email(self, email: str) -> User:
        return self._get_one(f"SELECT {USER_COLUMNS} FROM users WHERE email = %s", (email,))

    def _get_one(self, query: str, params: tuple) -> User:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        if row is None:
            raise RecordNotFound()
        return User.model_validate(row)

    def update(self, user: User) -> User:
        """Write every mutable field, guarded by the version the caller read."""
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE users
                        SET username = %s, email = %s, bio = %s, password_hash = %s,
                            is_active = %s, email_verified_at = %s,
                            updated_at = now(), version = version + 1
                        WHERE id = %s AND version = %s
                        RETURNING updated_at, version
                        """,
                        (
                            user.username,
                            user.email,
                            user.bio,
                            user.password_hash,
                            user.is_active,
                            user.email_verified_at,
                            user.id,
                            user.version,
                        ),
                    )
                    row = cur.fetchone()
        except psycopg.errors.UniqueViolation as exc:
            _raise_duplicate(exc)

        if row is None:
            raise EditConflict()
        user.updated_at = row["updated_at"]
        user.version = row["version"]
        return user
