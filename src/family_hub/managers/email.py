"""
EmailManager module for Family Hub.

- Sends email through an ordered list of providers: an HTTP API provider
  (SMTP2GO-style JSON endpoint) when configured, then a console provider that
  logs the message so development setups still see invitation links and codes.
- ``send`` raises ``DeliveryError`` when every provider failed; the template
  helpers return a bool, since invitation emails are best-effort.
"""

from typing import Awaitable, Callable, List, Optional

import httpx

from family_hub.config import settings
from family_hub.managers.logging_manager import get_logger

logger = get_logger(prefix="[EmailManager]")

EmailProvider = Callable[[str, str, str, Optional[str]], Awaitable[None]]


class DeliveryError(RuntimeError):
    """Every provider for a channel failed."""

    def __init__(self, channel: str, recipient: str, errors: List[str]):
        self.channel = channel
        self.recipient = recipient
        self.errors = errors
        super().__init__(f"{channel} delivery to {recipient} failed: {'; '.join(errors) or 'no providers'}")


class EmailManager:
    """
    Handles sending emails through the configured providers, first success wins.
    """

    def __init__(self, providers: Optional[List[EmailProvider]] = None):
        self.logger = logger
        if providers is None:
            providers = []
            if settings.email_api_configured:
                providers.append(self._send_via_http_api)
            providers.append(self._send_via_console)
        self.providers = providers
        self.logger.debug("Initialized with providers: %s", [p.__name__ for p in self.providers])

    async def send(self, to_email: str, subject: str, text: str, html: Optional[str] = None) -> None:
        """
        Send an email, trying each provider in order.

        Raises:
            DeliveryError: when no provider accepted the message
        """
        errors: List[str] = []
        for provider in self.providers:
            try:
                self.logger.debug("Trying provider: %s for %s", provider.__name__, to_email)
                await provider(to_email, subject, text, html)
                self.logger.info("Email '%s' sent to %s using provider %s", subject, to_email, provider.__name__)
                return
            except RuntimeError as e:
                errors.append(f"{provider.__name__}: {e}")
                self.logger.warning("Email provider %s failed for %s: %s", provider.__name__, to_email, e)
        self.logger.error("All email providers failed to send '%s' to %s", subject, to_email)
        raise DeliveryError("email", to_email, errors)

    async def send_family_invitation_email(
        self, to_email: str, inviter_name: str, family_name: str, role: str, accept_link: str, expires_at: str
    ) -> bool:
        """
        Send a parent-to-parent family invitation.
        Returns True if sent successfully, False otherwise.
        """
        subject = "You've been invited to join a family on Family Hub"
        text = (
            f"{inviter_name} has invited you to join the {family_name} family as {role}.\n\n"
            f"Accept the invitation: {accept_link}\n\n"
            f"This invitation expires on {expires_at}."
        )
        html = f"""
        <html>
        <body>
            <h2>Family Invitation</h2>
            <p>{inviter_name} has invited you to join the <strong>{family_name}</strong> family as {role}.</p>
            <p><a href='{accept_link}'>Accept Invitation</a></p>
            <p>This invitation will expire on {expires_at}.</p>
            <p>If you did not expect this invitation, you can safely ignore this email.</p>
        </body>
        </html>
        """
        try:
            await self.send(to_email, subject, text, html)
            return True
        except DeliveryError:
            return False

    async def send_teen_invitation_email(
        self, to_email: str, teen_name: str, parent_name: str, code: str, expires_minutes: int
    ) -> bool:
        """
        Send a teen invitation verification code.
        Returns True if sent successfully, False otherwise.
        """
        subject = "Your Family Hub invitation code"
        text = (
            f"Hi {teen_name}, {parent_name} invited you to join Family Hub.\n\n"
            f"Your verification code is {code}. It expires in {expires_minutes} minutes."
        )
        html = f"""
        <html>
        <body>
            <h2>Hi {teen_name}!</h2>
            <p>{parent_name} invited you to join Family Hub.</p>
            <p>Your verification code is <strong>{code}</strong>.</p>
            <p>The code expires in {expires_minutes} minutes.</p>
        </body>
        </html>
        """
        try:
            await self.send(to_email, subject, text, html)
            return True
        except DeliveryError:
            return False

    async def _send_via_http_api(self, to_email: str, subject: str, text: str, html: Optional[str]) -> None:
        payload = {
            "api_key": settings.EMAIL_API_KEY.get_secret_value(),
            "sender": settings.EMAIL_SENDER,
            "to": [to_email],
            "subject": subject,
            "text_body": text,
        }
        if html:
            payload["html_body"] = html
        url = f"{settings.EMAIL_API_URL.rstrip('/')}/email/send"
        async with httpx.AsyncClient(timeout=settings.EMAIL_REQUEST_TIMEOUT) as client:
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise RuntimeError(f"email API returned {exc.response.status_code}") from exc
            except httpx.RequestError as exc:
                raise RuntimeError(f"email API request failed: {exc}") from exc

    async def _send_via_console(self, to_email: str, subject: str, text: str, html: Optional[str]) -> None:
        self.logger.info("[CONSOLE EMAIL] To: %s | Subject: %s\n%s", to_email, subject, text)


email_manager = EmailManager()
