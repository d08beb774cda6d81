# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending service. Logs to console when SMTP not configured."""

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from fastapi.concurrency import run_in_threadpool

from novella_server.config import Settings, settings as default_settings
from novella_server.exceptions import DeliveryFailed

logger = logging.getLogger(__name__)


def wrap_body_html(plain_body: str) -> str:
    """Wrap plain text body in minimal HTML."""
    body_escaped = html.escape(plain_body).replace("\n", "<br>\n")
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; color: #333; max-width: 560px;">
<div style="white-space: pre-wrap;">{body_escaped}</div>
</body>
</html>"""


class Mailer:
    """Sends mail over SMTP. Delivery failures raise DeliveryFailed."""

    def __init__(self, settings: Settings = default_settings) -> None:
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.smtp_user)

    def _build(self, to: str, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.smtp_from
        msg["To"] = to
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(wrap_body_html(body), "html"))
        return msg

    def _send_smtp(self, to: str, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port) as server:
            server.starttls()
            server.login(self.settings.smtp_user, self.settings.smtp_password or "")
            server.sendmail(self.settings.smtp_from, [to], msg.as_string())

    async def send_email(self, to: str, subject: str, body: str) -> None:
        if not self.configured:
            logger.info("Email (SMTP not configured): To=%s Subject=%s Body=%s", to, subject, body[:200])
            return
        try:
            await run_in_threadpool(self._send_smtp, to, self._build(to, subject, body))
        except (smtplib.SMTPException, OSError) as e:
            logger.exception("Failed to send email to %s", to)
            raise DeliveryFailed("Failed to send email, please try again later") from e

    async def send_verification_code(self, to: str, code: str) -> None:
        minutes = max(1, self.settings.verification_code_ttl_seconds // 60)
        await self.send_email(
            to,
            "Your Novella verification code",
            f"Your verification code is: {code}\n\n"
            f"Enter this code to continue. It expires in {minutes} minutes.\n\n"
            "If you did not request this code, you can ignore this email.",
        )
