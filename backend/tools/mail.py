"""SMTP email transport."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

from runtime_state import CollaboratorNotConfigured, _env_int, _first_env

logger = logging.getLogger(__name__)


class SmtpEmailTransport:
    """Sends plain-text mail over implicit-TLS SMTP (port 465 by default)."""

    def __init__(
        self,
        user: Optional[str] = None,
        password: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        *,
        timeout_sec: float = 30.0,
    ) -> None:
        self.user = user if user is not None else _first_env(["AGENT_EMAIL_USER"])
        self.password = password if password is not None else _first_env(["AGENT_EMAIL_PASS"])
        self.host = host if host is not None else _first_env(["AGENT_EMAIL_HOST"], "smtp.hostinger.com")
        self.port = port if port is not None else _env_int("AGENT_EMAIL_PORT", 465, minimum=1)
        self._timeout_sec = timeout_sec

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def _require_credentials(self) -> None:
        missing = []
        if not self.user:
            missing.append("AGENT_EMAIL_USER")
        if not self.password:
            missing.append("AGENT_EMAIL_PASS")
        if missing:
            raise CollaboratorNotConfigured("email", missing)

    def _smtp_send(self, to: str, subject: str, body: str) -> str:
        """Blocking SMTP send, run via ``asyncio.to_thread``."""
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.user
        msg["To"] = to
        message_id = make_msgid()
        msg["Message-ID"] = message_id

        with smtplib.SMTP_SSL(self.host, self.port, timeout=self._timeout_sec) as server:
            server.login(self.user, self.password)
            server.sendmail(self.user, [to], msg.as_string())

        logger.info("Email sent to %s: %s", to, subject)
        return message_id

    async def send(self, to: str, subject: str, body: str) -> str:
        self._require_credentials()
        return await asyncio.to_thread(self._smtp_send, to, subject, body)
