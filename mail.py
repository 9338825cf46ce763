import logging
import os
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict

import html2text
from jinja2 import Environment, FileSystemLoader, select_autoescape

from errors import DeliveryError

logger = logging.getLogger("uvicorn.error")

MAIL_HOST = os.getenv("MAIL_HOST", "localhost")
MAIL_PORT = int(os.getenv("MAIL_PORT", 25))
MAIL_USER = os.getenv("MAIL_USER")
MAIL_PASS = os.getenv("MAIL_PASS")
MAIL_FROM = os.getenv("MAIL_FROM", "Store Directory <noreply@example.com>")

TEMPLATE_DIR = Path(__file__).parent / "templates" / "email"


def html_to_text(markup: str) -> str:
    """Plaintext fallback for mail clients that will not render HTML."""
    converter = html2text.HTML2Text()
    converter.body_width = 0
    return converter.handle(markup).strip()


class Mailer:
    def __init__(self, host: str = MAIL_HOST, port: int = MAIL_PORT, username=MAIL_USER, password=MAIL_PASS,
                 sender: str = MAIL_FROM, template_dir: Path = TEMPLATE_DIR):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.env = Environment(loader=FileSystemLoader(str(template_dir)), autoescape=select_autoescape(["html"]))

    def render(self, template_name: str, **context: Any) -> str:
        return self.env.get_template(f"{template_name}.html").render(**context)

    def send(self, user: Dict[str, Any], subject: str, template_name: str, **context: Any) -> None:
        markup = self.render(template_name, user=user, **context)

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = user["email"]
        msg["Subject"] = subject
        msg.set_content(html_to_text(markup))
        msg.add_alternative(markup, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.exception("Mail delivery to %s failed", user["email"])
            raise DeliveryError(f"Could not send email: {e}")
