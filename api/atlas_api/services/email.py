from __future__ import annotations

import html
from functools import lru_cache
from urllib.parse import urlencode

import httpx

from atlas_api.core.config import get_settings


class EmailDeliveryError(Exception):
    """Raised when the verification email could not be handed to the provider."""


class VerificationMailer:
    """Sends claim verification links through the Resend HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        sender: str,
        public_base_url: str,
        token_ttl_hours: int = 24,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.sender = sender
        self.public_base_url = public_base_url.rstrip("/")
        self.token_ttl_hours = token_ttl_hours
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def verify_url(self, token: str) -> str:
        return f"{self.public_base_url}/claim/verify?{urlencode({'token': token})}"

    async def send_verification(self, *, email: str, token: str, institution_name: str) -> None:
        if not self.api_key:
            raise EmailDeliveryError("email API key is not configured")

        verify_url = self.verify_url(token)
        safe_name = html.escape(institution_name)
        ttl = f"{self.token_ttl_hours} hour" if self.token_ttl_hours == 1 else f"{self.token_ttl_hours} hours"
        payload = {
            "from": self.sender,
            "to": [email],
            "subject": f"Verify your claim for {institution_name}",
            "html": (
                f"<p>You requested to claim <strong>{safe_name}</strong> in the Flight School Directory.</p>"
                f'<p><a href="{html.escape(verify_url)}">Verify claim</a></p>'
                f"<p>This link expires in {ttl}. If you did not request it, ignore this email.</p>"
            ),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/emails", json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"verification email failed: {exc}") from exc


@lru_cache
def get_verification_mailer() -> VerificationMailer:
    settings = get_settings()
    return VerificationMailer(
        base_url=settings.email_base_url,
        api_key=settings.email_api_key,
        sender=settings.email_from,
        public_base_url=settings.public_base_url,
        token_ttl_hours=settings.claim_token_ttl_hours,
        timeout_seconds=settings.email_timeout_seconds,
    )
