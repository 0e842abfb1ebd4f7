from __future__ import annotations

import logging
import smtplib
import time
from email.message import EmailMessage
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional

from .config import Settings

LOGGER = logging.getLogger("gchat.mailer")

SMTP_TIMEOUT_SECONDS = 5
RETRY_BASE_DELAY_SECONDS = 0.5


class Template(NamedTuple):
    subject: str
    plain_body: str
    html_body: str


ACCOUNT_ACTIVATION = "user_account_activation"

TEMPLATES: Dict[str, Template] = {
    ACCOUNT_ACTIVATION: Template(
        subject="Welcome to GChat!",
        plain_body=(
            "Hi,\n\n"
            "Thanks for signing up for a GChat account.\n\n"
            "For future reference, your user ID number is {userID}.\n\n"
            "Please send a request to the `POST /api/v1/users/account/activate` endpoint "
            'with the following JSON body to activate your account:\n\n{{"token": "{activationToken}"}}\n\n'
            "Please note that this is a one-time use token and it will expire in 1 hour.\n\n"
            "Thanks,\n\nThe GChat Team\n"
        ),
        html_body=(
            "<!doctype html>\n<html>\n<head>\n"
            '<meta name="viewport" content="width=device-width" />\n'
            '<meta http-equiv="Content-Type" content="text/html; charset=UTF-8" />\n'
            "</head>\n<body>\n"
            "<p>Hi,</p>\n"
            "<p>Thanks for signing up for a GChat account.</p>\n"
            "<p>For future reference, your user ID number is {userID}.</p>\n"
            "<p>Please send a request to the <code>POST /api/v1/users/account/activate</code> endpoint "
            "with the following JSON body to activate your account:</p>\n"
            '<pre><code>{{"token": "{activationToken}"}}</code></pre>\n'
            "<p>Please note that this is a one-time use token and it will expire in 1 hour.</p>\n"
            "<p>Thanks,</p>\n<p>The GChat Team</p>\n"
            "</body>\n</html>\n"
        ),
    ),
}


def render(template_name: str, data: Mapping[str, Any]) -> EmailMessage:
    template = TEMPLATES[template_name]
    msg = EmailMessage()
    msg["Subject"] = template.subject.format(**data)
    msg.set_content(template.plain_body.format(**data))
    msg.add_alternative(template.html_body.format(**data), subtype="html")
    return msg


class Mailer:
    def __init__(self, settings: Settings, sleep: Callable[[float], None] = time.sleep):
        self.host = settings.mailer_host
        self.port = settings.mailer_port
        self.username = settings.mailer_username
        self.password = settings.mailer_password
        self.sender = settings.mailer_sender
        self.max_attempts = settings.mailer_max_attempts
        self._sleep = sleep

    def send(self, recipient: str, template_name: str, data: Mapping[str, Any]) -> None:
        msg = render(template_name, data)
        msg["From"] = self.sender
        msg["To"] = recipient

        with smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    def send_with_retry(self, recipient: str, template_name: str, data: Mapping[str, Any]) -> bool:
        """Deliver with exponential backoff. Failures are logged and dropped, never raised."""
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.send(recipient, template_name, data)
                return True
            except (smtplib.SMTPException, OSError) as exc:
                last_error = exc
                LOGGER.warning(
                    "mail delivery attempt %s/%s failed (template=%s): %s",
                    attempt,
                    self.max_attempts,
                    template_name,
                    exc,
                )
                if attempt < self.max_attempts:
                    self._sleep(RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)))

        LOGGER.error("dropping mail after %s attempts (template=%s): %s", self.max_attempts, template_name, last_error)
        return False


def send_activation_email(mailer: Mailer, user_id: int, email: str, activation_token: str) -> None:
    try:
        mailer.send_with_retry(
            email,
            ACCOUNT_ACTIVATION,
            {"activationToken": activation_token, "userID": user_id},
        )
    except Exception:
        # background task: nothing upstream can handle this
        LOGGER.exception("error sending activation email to user %s", user_id)
