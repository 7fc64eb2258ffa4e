"""Email delivery of claimed codes."""

from abc import ABC, abstractmethod
from email.message import EmailMessage
from pathlib import Path
from typing import List, Optional
import logging

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates" / "emails"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_codes_email(codes: List[str], support_email: str) -> str:
    return _env.get_template("codes.html").render(
        codes=codes, support_email=support_email
    )


def render_reward_email(code: str, support_email: str) -> str:
    return _env.get_template("reward.html").render(
        code=code, support_email=support_email
    )


# ----------------------------
# Notifier Interface
# ----------------------------
class Notifier(ABC):
    """
    Both methods return True only when the message was handed off. A False
    return (or an exception) means the codes did not reach the customer.
    """

    @abstractmethod
    async def deliver(self, to_email: str, codes: List[str]) -> bool: ...

    @abstractmethod
    async def deliver_reward(self, to_email: str, code: str) -> bool: ...


# ----------------------------
# SMTP implementation
# ----------------------------
class SmtpNotifier(Notifier):
    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        mail_from: str,
        support_email: str,
        use_tls: bool = False,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.mail_from = mail_from
        self.support_email = support_email
        self.use_tls = use_tls
        self.timeout = timeout

    def _message(self, to_email: str, subject: str, html: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.mail_from
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content("Please view this message in an HTML capable client.")
        msg.add_alternative(html, subtype="html")
        return msg

    async def _send(self, msg: EmailMessage) -> bool:
        try:
            async with aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                use_tls=self.use_tls,
                timeout=self.timeout,
            ) as smtp:
                if self.username:
                    await smtp.login(self.username, self.password or "")
                await smtp.send_message(msg)
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", msg["To"], e)
            return False
        logger.info("Email sent to %s", msg["To"])
        return True

    async def deliver(self, to_email: str, codes: List[str]) -> bool:
        subject = (
            "Your WakaTV Access Code" if len(codes) == 1
            else "Your WakaTV Access Codes"
        )
        html = render_codes_email(codes, self.support_email)
        return await self._send(self._message(to_email, subject, html))

    async def deliver_reward(self, to_email: str, code: str) -> bool:
        html = render_reward_email(code, self.support_email)
        return await self._send(
            self._message(to_email, "You earned a free WakaTV code", html)
        )


class ConsoleNotifier(Notifier):
    """Development stand-in when no SMTP credentials are configured."""

    async def deliver(self, to_email: str, codes: List[str]) -> bool:
        logger.warning("SMTP not configured; codes for %s: %s",
                       to_email, ", ".join(codes))
        return True

    async def deliver_reward(self, to_email: str, code: str) -> bool:
        logger.warning("SMTP not configured; reward code for %s: %s",
                       to_email, code)
        return True
