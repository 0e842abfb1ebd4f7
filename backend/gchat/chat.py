"""Request-level flows composed from the models.

These functions carry the authorization decisions: who may read or post in
a conversation and who may enrol group participants. They take an already
resolved :class:`~gchat.users.User` and raise :mod:`gchat.errors` types.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .conversations import TYPE_GROUP, TYPE_PRIVATE, Conversation, ConversationPreview
from .errors import (
    DuplicateEmail,
    DuplicateUsername,
    Forbidden,
    InvalidCredential,
    RecordNotFound,
    ValidationFailed,
)
from .messages import (
    DEFAULT_MESSAGE_SORT,
    GROUP_MESSAGE_SORT_SAFE_LIST,
    ConversationMessage,
    GroupMessage,
    MessageWithReply,
    validate_message_body,
)
from .models import Models
from .participants import ConversationParticipant
from .pagination import Filters, PaginationMetadata, empty_page, normalize_sort, validate_filters
from .tokens import (
    ACCESS_TOKEN_TTL,
    ACTIVATION_TOKEN_TTL,
    SCOPE_ACCOUNT_ACTIVATION,
    SCOPE_AUTHENTICATION_ACCESS,
    Token,
    validate_token_plaintext,
)
from .users import User, validate_email, validate_password_plaintext, validate_user
from .validator import Validator, byte_length, valid_utf8

MAX_GROUP_NAME_BYTES = 100


# =========================
# Accounts
# =========================
def register_user(
    models: Models, username: str, email: str, password: str, bio: Optional[str] = None
) -> Tuple[User, Token]:
    """Create an inactive user and the activation token to mail to them."""
    user = User(username=username.strip(), email=email.strip(), bio=bio, is_active=False)
    user.set_password(password)

    v = Validator()
    validate_user(v, user, password)
    v.raise_if_invalid()

    try:
        models.users.insert(user)
    except DuplicateUsername as exc:
        v.add_error("username", exc.message)
        v.raise_if_invalid()
    except DuplicateEmail as exc:
        v.add_error("email", exc.message)
        v.raise_if_invalid()

    token = models.tokens.issue(user.id, ACTIVATION_TOKEN_TTL, SCOPE_ACCOUNT_ACTIVATION)
    return user, token


def activate_user(models: Models, plaintext: str) -> User:
    v = Validator()
    validate_token_plaintext(v, plaintext)
    v.raise_if_invalid()

    try:
        user = models.tokens.resolve(plaintext, SCOPE_ACCOUNT_ACTIVATION)
    except RecordNotFound:
        raise ValidationFailed({"token": "invalid or expired activation token"}) from None

    user.is_active = True
    user.email_verified_at = datetime.now(timezone.utc)
    models.users.update(user)

    models.tokens.revoke_all(user.id, SCOPE_ACCOUNT_ACTIVATION)
    return user


def create_access_token(models: Models, email: str, password: str) -> Token:
    v = Validator()
    validate_email(v, email)
    validate_password_plaintext(v, password)
    v.raise_if_invalid()

    try:
        user = models.users.get_by_email(email)
    except RecordNotFound:
        raise InvalidCredential("invalid authentication credentials") from None

    if not user.password_matches(password):
        raise InvalidCredential("invalid authentication credentials")

    return models.tokens.issue(user.id, ACCESS_TOKEN_TTL, SCOPE_AUTHENTICATION_ACCESS)


# =========================
# Conversations
# =========================
def list_conversations(
    models: Models, user: User, filters: Filters
) -> Tuple[List[ConversationPreview], PaginationMetadata]:
    v = Validator()
    validate_filters(v, filters)
    v.raise_if_invalid()

    return models.conversations.list_with_preview(user.id, filters)


def create_group(models: Models, owner: User, name: str) -> Conversation:
    name = (name or "").strip()
    v = Validator()
    v.check(name != "", "name", "must be provided")
    v.check(valid_utf8(name), "name", "must be valid UTF-8")
    v.check(byte_length(name) <= MAX_GROUP_NAME_BYTES, "name", "must not be more than 100 bytes long")
    v.raise_if_invalid()

    return models.conversations.create_group(owner.id, name)


def add_group_participant(models: Models, actor: User, group_id: int, user_id: int) -> ConversationParticipant:
    group = models.conversations.get(group_id, TYPE_GROUP)
    if group.owner_id != actor.id:
        if not models.participants.exists(actor.id, group_id, TYPE_GROUP):
            raise RecordNotFound()
        raise Forbidden("only the group owner can add participants")

    return models.participants.add(group_id, user_id)


# =========================
# Messages
# =========================
def _check_reply(
    models: Models, v: Validator, replied_message_id: Optional[int], conversation_id: int, conversation_type: str
) -> None:
    if replied_message_id is None:
        return
    belongs = models.messages.belongs_to_conversation(replied_message_id, conversation_id, conversation_type)
    v.check(belongs, "replied_message_id", "must reference a message of this conversation")


def list_private_messages(
    models: Models, user: User, other_user_id: int, filters: Filters
) -> Tuple[List[MessageWithReply], PaginationMetadata]:
    v = Validator()
    validate_filters(v, filters)
    v.check(other_user_id != user.id, "other_user_id", "must not be your own id")
    v.raise_if_invalid()

    try:
        conversation = models.conversations.find_private_between(user.id, other_user_id)
    except RecordNotFound:
        # no history yet
        return empty_page(filters)

    return models.messages.list_for_private(conversation.id, filters)


def send_private_message(
    models: Models,
    sender: User,
    other_user_id: int,
    message_type: str,
    content: str,
    replied_message_id: Optional[int] = None,
) -> ConversationMessage:
    v = Validator()
    v.check(other_user_id != sender.id, "other_user_id", "must not be your own id")
    validate_message_body(v, message_type, content)
    v.raise_if_invalid()

    models.users.get(other_user_id)

    if replied_message_id is None:
        conversation = models.conversations.get_or_create_private_between(sender.id, other_user_id)
    else:
        # a reply needs existing history, so never create here
        try:
            conversation = models.conversations.find_private_between(sender.id, other_user_id)
        except RecordNotFound:
            v.add_error("replied_message_id", "must reference a message of this conversation")
            v.raise_if_invalid()
        _check_reply(models, v, replied_message_id, conversation.id, TYPE_PRIVATE)
        v.raise_if_invalid()

    message = ConversationMessage(
        conversation_id=conversation.id,
        sender_id=sender.id,
        type=message_type,
        content=content,
        replied_message_id=replied_message_id,
    )
    return models.messages.insert(message)


def group_filters(page: int, page_size: int, sort: str = "") -> Filters:
    return Filters(
        page=page,
        page_size=page_size,
        sort=normalize_sort(sort, DEFAULT_MESSAGE_SORT),
        sort_safe_list=GROUP_MESSAGE_SORT_SAFE_LIST,
    )


def list_group_messages(
    models: Models, user: User, group_id: int, filters: Filters
) -> Tuple[List[GroupMessage], PaginationMetadata]:
    v = Validator()
    validate_filters(v, filters)
    v.raise_if_invalid()

    # non-members must not learn whether the group exists
    if not models.participants.exists(user.id, group_id, TYPE_GROUP):
        raise RecordNotFound()

    return models.messages.list_for_group(group_id, filters)


def send_group_message(
    models: Models,
    sender: User,
    group_id: int,
    message_type: str,
    content: str,
    replied_message_id: Optional[int] = None,
) -> ConversationMessage:
    v = Validator()
    validate_message_body(v, message_type, content)
    v.raise_if_invalid()

    if not models.participants.exists(sender.id, group_id, TYPE_GROUP):
        raise RecordNotFound()

    _check_reply(models, v, replied_message_id, group_id, TYPE_GROUP)
    v.raise_if_invalid()

    message = ConversationMessage(
        conversation_id=group_id,
        sender_id=sender.id,
        type=message_type,
        content=content,
        replied_message_id=replied_message_id,
    )
    return models.messages.insert(message)
