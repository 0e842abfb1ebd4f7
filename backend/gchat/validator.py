from __future__ import annotations

import re
from typing import Any, Dict

from .errors import ValidationFailed

EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


class Validator:
    """Collects field-keyed errors; only the first message per field is kept."""

    def __init__(self) -> None:
        self._errors: Dict[str, str] = {}

    def valid(self) -> bool:
        return not self._errors

    def add_error(self, key: str, message: str) -> None:
        self._errors.setdefault(key, message)

    def check(self, condition: bool, key: str, message: str) -> None:
        if not condition:
            self.add_error(key, message)

    @property
    def errors(self) -> Dict[str, str]:
        return dict(self._errors)

    def raise_if_invalid(self) -> None:
        if self._errors:
            raise ValidationFailed(self._errors)


def permitted_value(value: Any, *permitted: Any) -> bool:
    return value in permitted


def valid_utf8(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def byte_length(value: str) -> int:
    # lone surrogates are counted, not raised; valid_utf8 reports them
    return len(value.encode("utf-8", "surrogatepass"))
