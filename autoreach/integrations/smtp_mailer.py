"""
Autoreach - SMTP Mailer
Delivers follow-ups over SMTP. The whole conversation with the server is
bounded by the timeout handed in by the scheduler.
"""
import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional
from autoreach.config import (
    SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD, SMTP_SECURITY,
    SENDER_NAME, SENDER_EMAIL,
)
from autoreach.integrations.collaborators import Mailer

logger = logging.getLogger(__name__)


class SmtpMailer(Mailer):
    """Plain-text SMTP delivery (STARTTLS, implicit SSL, or none)."""

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        security: str = SMTP_SECURITY,
        sender_email: Optional[str] = None,
        sender_name: str = SENDER_NAME,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.security = (security or "starttls").lower()
        self.sender_email = sender_email or SENDER_EMAIL or username
        self.sender_name = sender_name

    def _connect(self, timeout: float) -> smtplib.SMTP:
        if self.security == "ssl":
            return smtplib.SMTP_SSL(self.host, self.port, timeout=timeout)
        server = smtplib.SMTP(self.host, self.port, timeout=timeout)
        if self.security == "starttls":
            server.starttls()
        return server

    def send(self, recipients: list[str], subject: str, body: str, timeout: float) -> str:
        if not self.host:
            raise RuntimeError("SMTP host is not configured")
        if not recipients:
            raise ValueError("No recipients")

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.sender_name, self.sender_email)) if self.sender_name else self.sender_email
        msg["To"] = ", ".join(recipients)
        domain = self.sender_email.split("@")[-1] if "@" in self.sender_email else None
        message_id = make_msgid(domain=domain)
        msg["Message-ID"] = message_id

        with self._connect(timeout) as server:
            if self.username:
                server.login(self.username, self.password)
            server.sendmail(self.sender_email, recipients, msg.as_string())

        logger.info(f"Email sent to {', '.join(recipients)}: {subject}")
        return message_id
