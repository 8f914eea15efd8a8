"""
Outbound email through an HTTP mail API.

Mail is a side effect: callers that must not fail because of it use
`send_quietly`, which logs and reports instead of raising.
"""

import os
import html
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from dotenv import load_dotenv

from errors import ExternalServiceError

load_dotenv()

logger = logging.getLogger(__name__)

MAIL_API_URL = os.getenv("MAIL_API_URL", "")
MAIL_API_KEY = os.getenv("MAIL_API_KEY", "")
MAIL_FROM = os.getenv("MAIL_FROM", "FlyFile <noreply@flyfile.it>")
MAIL_TIMEOUT = float(os.getenv("MAIL_TIMEOUT", "5.0"))
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")


@dataclass
class EmailMessage:
    subject: str
    text: str
    html: str


class Mailer:

    def __init__(self, api_url: str = None, api_key: str = None,
                 sender: str = None, timeout: float = None):
        self.api_url = MAIL_API_URL if api_url is None else api_url
        self.api_key = MAIL_API_KEY if api_key is None else api_key
        self.sender = sender or MAIL_FROM
        self.timeout = MAIL_TIMEOUT if timeout is None else timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    def send(self, to: str, subject: str, text: str, html_body: Optional[str] = None):
        if not self.enabled:
            logger.info(f"Mail disabled, not sending '{subject}' to {to}")
            return

        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text}
        if html_body:
            payload["html"] = html_body
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            response = httpx.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.ConnectError as e:
            logger.error(f"Mail API unreachable at {self.api_url}: {e}")
            raise ExternalServiceError("Email service unavailable") from e
        except httpx.TimeoutException as e:
            logger.error(f"Mail API timeout after {self.timeout}s")
            raise ExternalServiceError("Email service timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Mail API rejected message: HTTP {e.response.status_code}")
            raise ExternalServiceError("Email service rejected the message") from e

    def send_message(self, to: str, message: EmailMessage):
        self.send(to, message.subject, message.text, message.html)

    def send_quietly(self, to: str, message: EmailMessage) -> bool:
        try:
            self.send_message(to, message)
            return True
        except ExternalServiceError as e:
            logger.warning(f"Email to {to} dropped: {e.message}")
            return False


# ─── Templates ────────────────────────────────────────────────────────────────

def _wrap(title: str, body_html: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: sans-serif\">"
        f"<h2>{html.escape(title)}</h2>{body_html}"
        "<p style=\"color:#888\">FlyFile</p></body></html>"
    )


def download_link(transfer_id: str) -> str:
    return f"{APP_BASE_URL.rstrip('/')}/download/{transfer_id}"


def transfer_notification_email(sender_name: str, title: str, transfer_id: str,
                                file_count: int, expires_at, message: str = None,
                                has_password: bool = False) -> EmailMessage:
    link = download_link(transfer_id)
    who = sender_name or "Someone"
    expiry = expires_at.strftime("%Y-%m-%d") if expires_at else ""
    lines = [
        f"{who} sent you {file_count} file(s) with FlyFile: {title}",
        "",
        f"Download: {link}",
        f"Available until {expiry}.",
    ]
    if message:
        lines[1:1] = ["", message]
    if has_password:
        lines.append("The transfer is password protected; ask the sender for the password.")

    body = f"<p>{html.escape(who)} sent you {file_count} file(s): <b>{html.escape(title)}</b></p>"
    if message:
        body += f"<blockquote>{html.escape(message)}</blockquote>"
    body += f"<p><a href=\"{html.escape(link)}\">Download files</a> (until {expiry})</p>"
    if has_password:
        body += "<p>This transfer is password protected.</p>"

    return EmailMessage(
        subject=f"{who} sent you files: {title}",
        text="\n".join(lines),
        html=_wrap(title, body),
    )


def sender_confirmation_email(title: str, transfer_id: str, recipient_email: str,
                              file_count: int, expires_at) -> EmailMessage:
    link = download_link(transfer_id)
    expiry = expires_at.strftime("%Y-%m-%d") if expires_at else ""
    target = f" to {recipient_email}" if recipient_email else ""
    text = (
        f"Your transfer \"{title}\" ({file_count} file(s)) was sent{target}.\n"
        f"Link: {link}\nExpires on {expiry}."
    )
    body = (
        f"<p>Your transfer <b>{html.escape(title)}</b> ({file_count} file(s)) was sent"
        f"{html.escape(target)}.</p><p><a href=\"{html.escape(link)}\">{html.escape(link)}</a></p>"
        f"<p>Expires on {expiry}.</p>"
    )
    return EmailMessage(subject=f"Transfer sent: {title}", text=text, html=_wrap(title, body))


def verification_code_email(code: str, expires_in_minutes: int = 10) -> EmailMessage:
    text = f"Your FlyFile verification code is {code}. It expires in {expires_in_minutes} minutes."
    body = (
        f"<p>Your verification code:</p><p style=\"font-size:28px;letter-spacing:6px\"><b>{code}</b></p>"
        f"<p>It expires in {expires_in_minutes} minutes.</p>"
    )
    return EmailMessage(subject="Your FlyFile verification code", text=text,
                        html=_wrap("Verify your email", body))
