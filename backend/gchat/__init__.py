"""gchat: conversations, messages, group membership and opaque bearer tokens."""

__version__ = "1.0.0"
