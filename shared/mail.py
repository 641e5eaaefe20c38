"""Outbound mail transport.

Uses SendGrid's HTTP API when an API key is configured, otherwise plain SMTP.
"""
import asyncio
import base64
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Sequence

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class MailDeliveryError(RuntimeError):
    pass


@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


class MailTransport:
    """Sends email, optionally with attachments."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http_client = http_client

    async def send(
        self,
        to_email: str,
        subject: str,
        body: str,
        is_html: bool = True,
        attachments: Sequence[Attachment] = (),
    ):
        if self.settings.sendgrid_api_key:
            await self._send_via_sendgrid(to_email, subject, body, is_html, attachments)
        else:
            await asyncio.to_thread(self._send_via_smtp, to_email, subject, body, is_html, attachments)

        logger.info(f"Email '{subject}' sent to {to_email}")

    def _send_via_smtp(self, to_email, subject, body, is_html, attachments):
        msg = EmailMessage()
        msg["From"] = self.settings.mail_from
        msg["To"] = to_email
        msg["Subject"] = subject
        if is_html:
            msg.set_content("This message requires an HTML capable mail client.")
            msg.add_alternative(body, subtype="html")
        else:
            msg.set_content(body)

        for attachment in attachments:
            maintype, subtype = (attachment.mime_type.split("/", 1) + ["octet-stream"])[:2]
            msg.add_attachment(
                attachment.content, maintype=maintype, subtype=subtype, filename=attachment.filename
            )

        with smtplib.SMTP(
            self.settings.smtp_host, self.settings.smtp_port, timeout=self.settings.http_timeout_seconds
        ) as smtp:
            if self.settings.smtp_use_tls:
                smtp.starttls()
            if self.settings.smtp_username:
                smtp.login(self.settings.smtp_username, self.settings.smtp_password)
            smtp.send_message(msg)

    async def _send_via_sendgrid(self, to_email, subject, body, is_html, attachments):
        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.settings.mail_from},
            "subject": subject,
            "content": [{"type": "text/html" if is_html else "text/plain", "value": body}],
        }
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(a.content).decode("utf-8"),
                    "type": a.mime_type,
                    "filename": a.filename,
                    "disposition": "attachment",
                }
                for a in attachments
            ]

        client = self.http_client or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
        try:
            response = await client.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
            )
        finally:
            if client is not self.http_client:
                await client.aclose()

        if response.status_code >= 400:
            raise MailDeliveryError(f"SendGrid error {response.status_code}: {response.text}")

    async def send_contract(self, to_email: str, renter_name: str, pdf_bytes: bytes, contract_id: int):
        await self.send(
            to_email,
            f"Your rental contract #{contract_id}",
            f"<p>Dear {renter_name},</p>"
            f"<p>Thank you for renting with us. Your rental contract #{contract_id} is attached.</p>",
            attachments=[Attachment(f"contract-{contract_id}.pdf", pdf_bytes)],
        )

    async def send_receipt(self, to_email: str, renter_name: str, pdf_bytes: bytes, invoice_id: int):
        await self.send(
            to_email,
            f"Payment receipt for invoice #{invoice_id}",
            f"<p>Dear {renter_name},</p>"
            f"<p>We have received your payment. The receipt for invoice #{invoice_id} is attached.</p>",
            attachments=[Attachment(f"receipt-{invoice_id}.pdf", pdf_bytes)],
        )
