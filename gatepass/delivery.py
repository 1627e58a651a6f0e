from __future__ import annotations
import asyncio
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import List, Optional

from jinja2 import Environment, DictLoader, select_autoescape
from loguru import logger


@dataclass
class Attachment:
    filename: str
    content: bytes
    cid: str
    maintype: str = "image"
    subtype: str = "png"


@dataclass
class TicketEmail:
    to: str
    subject: str
    html: str
    text: str
    attachments: List[Attachment]


# ----------------------------
# Templates
# ----------------------------
TEMPLATES = {
    "ticket.html": """
<p>Hello{% if name %}, {{ name }}{% endif %}!</p>
<p>Thank you for buying a ticket for <strong>{{ event_name }}</strong>.</p>
<p><strong>Order:</strong> {{ order_id }}<br>
   <strong>Ticket type:</strong> {{ ticket_type }}</p>
<p>Show the QR code at the entrance or read out the backup code:</p>
<p><code style="word-break:break-all">{{ token }}</code></p>
{% if cid %}<p><img src="cid:{{ cid }}" alt="QR" width="300" height="300"/></p>{% endif %}
""",
    "ticket.txt": """Hello{% if name %}, {{ name }}{% endif %}!

Thank you for buying a ticket for {{ event_name }}.
Order: {{ order_id }}
Ticket type: {{ ticket_type }}

Backup code: {{ token }}
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"])
)


def compose_ticket_email(*, to: str, name: Optional[str], event_name: str,
                         order_id: str, ticket_id: str, ticket_type: str,
                         token: str, png: bytes) -> TicketEmail:
    cid = f"qr@{ticket_id}" if png else None
    ctx = {
        "name": name,
        "event_name": event_name,
        "order_id": order_id,
        "ticket_type": ticket_type,
        "token": token,
        "cid": cid,
    }
    attachments = []
    if png:
        attachments.append(Attachment(
            filename=f"ticket-{ticket_id}.png", content=png, cid=cid
        ))
    return TicketEmail(
        to=to,
        subject=f"Your ticket: {event_name}",
        html=env.get_template("ticket.html").render(**ctx),
        text=env.get_template("ticket.txt").render(**ctx),
        attachments=attachments,
    )


# ----------------------------
# Mailer Interface
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def deliver(self, email: TicketEmail) -> None:
        """Send or raise; retrying transient errors is the mailer's job."""


class SMTPMailer(Mailer):
    def __init__(self, *, host: str, port: int, sender: str,
                 user: Optional[str] = None, password: Optional[str] = None,
                 timeout: float = 20.0, retries: int = 2,
                 backoff: float = 1.0) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.user = user
        self.password = password
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    def build_message(self, email: TicketEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = email.to
        msg["Subject"] = email.subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(email.text)
        msg.add_alternative(email.html, subtype="html")
        html_part = msg.get_payload()[1]
        for att in email.attachments:
            html_part.add_related(
                att.content,
                maintype=att.maintype,
                subtype=att.subtype,
                cid=f"<{att.cid}>",
                filename=att.filename,
            )
        return msg

    def _send(self, msg: EmailMessage) -> None:
        # 465 is implicit TLS, anything else upgrades with STARTTLS
        context = ssl.create_default_context()
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port,
                                    timeout=self.timeout, context=context)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp as server:
            if self.port != 465:
                server.starttls(context=context)
            if self.user:
                server.login(self.user, self.password or "")
            server.send_message(msg)

    async def deliver(self, email: TicketEmail) -> None:
        msg = self.build_message(email)
        attempt = 0
        while True:
            try:
                await asyncio.to_thread(self._send, msg)
                return
            except (smtplib.SMTPServerDisconnected,
                    smtplib.SMTPConnectError, TimeoutError,
                    ConnectionError) as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                logger.warning(
                    "smtp transient error, retry {}/{}: {}",
                    attempt, self.retries, e,
                )
                await asyncio.sleep(self.backoff * attempt)


class NullMailer(Mailer):
    """MAIL_ENABLED=0: log instead of sending."""

    async def deliver(self, email: TicketEmail) -> None:
        logger.info("mail disabled; would send {!r} to {}",
                    email.subject, email.to)
