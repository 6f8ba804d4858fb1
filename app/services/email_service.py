"""Email delivery service using Resend API."""

import logging
from typing import Any

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailService:
    """Sends transactional emails via the Resend API.

    Credentials are passed in explicitly; ``from_settings`` builds the
    instance the app and workers use.
    """

    def __init__(
        self,
        api_key: str,
        from_address: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "EmailService":
        return cls(
            api_key=settings.resend_api_key,
            from_address=f"{settings.email_from_name} <{settings.email_from_address}>",
        )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
        tags: list[dict[str, str]] | None = None,
    ) -> str | None:
        """Send one email.

        Returns the Resend email ID on success, None on failure.
        """
        payload: dict[str, Any] = {
            "from": self.from_address,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            payload["text"] = text_content
        if tags:
            payload["tags"] = tags

        if not self.api_key:
            logger.warning("Resend API key not configured, email not sent to %s", to_email)
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.is_success:
                    data = response.json()
                    email_id = data.get("id")
                    logger.info("Email sent: to=%s id=%s", to_email, email_id)
                    return str(email_id) if email_id else None
                else:
                    logger.error(
                        "Failed to send email: to=%s status=%s body=%s",
                        to_email,
                        response.status_code,
                        response.text[:500],
                    )
                    return None
        except Exception:
            logger.exception("Error sending email to %s", to_email)
            return None
