"""Resolve a bearer credential into an identity.

An identity is either :data:`ANONYMOUS` or :class:`Authenticated`. Both
compare structurally, so callers never test identity by reference.
"""
from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from .errors import AuthenticationRequired, InactiveAccount, InvalidCredential, RecordNotFound
from .tokens import SCOPE_AUTHENTICATION_ACCESS, TokenModel, validate_token_plaintext
from .users import User
from .validator import Validator


class Anonymous(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["anonymous"] = "anonymous"

    def is_anonymous(self) -> bool:
        return True

    @property
    def user_id(self) -> Optional[int]:
        return None


class Authenticated(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    user: User

    def is_anonymous(self) -> bool:
        return False

    @property
    def user_id(self) -> Optional[int]:
        return self.user.id


Identity = Union[Anonymous, Authenticated]

ANONYMOUS = Anonymous()


def parse_bearer(authorization: str) -> str:
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise InvalidCredential()

    token = parts[1]
    v = Validator()
    validate_token_plaintext(v, token)
    if not v.valid():
        raise InvalidCredential()
    return token


def authenticate(tokens: TokenModel, authorization: Optional[str]) -> Identity:
    """No header gives ANONYMOUS; a malformed or unknown token raises InvalidCredential."""
    if not authorization:
        return ANONYMOUS

    token = parse_bearer(authorization)
    try:
        user = tokens.resolve(token, SCOPE_AUTHENTICATION_ACCESS)
    except RecordNotFound:
        raise InvalidCredential() from None
    return Authenticated(user=user)


def require_authenticated(identity: Identity) -> User:
    if identity.is_anonymous():
        raise AuthenticationRequired()
    return identity.user


def require_activated(identity: Identity) -> User:
    user = require_authenticated(identity)
    if not user.is_active:
        raise InactiveAccount()
    return user
