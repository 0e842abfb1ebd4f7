from __future__ import annotations

from typing import Any

from .conversations import ConversationModel
from .messages import MessageModel
from .participants import ParticipantModel
from .tokens import TokenModel
from .users import UserModel


class Models:
    """All store-backed models sharing one database handle."""

    def __init__(self, db: Any):
        self.db = db
        self.conversations = ConversationModel(db)
        self.messages = MessageModel(db)
        self.participants = ParticipantModel(db)
        self.tokens = TokenModel(db)
        self.users = UserModel(db)
