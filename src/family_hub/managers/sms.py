"""
SmsManager module for Family Hub.

Same provider-chain shape as the EmailManager: an HTTP gateway provider when
configured, then a console provider that logs the message.
"""

from typing import Awaitable, Callable, List, Optional

import httpx

from family_hub.config import settings
from family_hub.managers.email import DeliveryError
from family_hub.managers.logging_manager import get_logger

logger = get_logger(prefix="[SmsManager]")

SmsProvider = Callable[[str, str], Awaitable[None]]


class SmsManager:
    """Sends text messages through the configured providers, first success wins."""

    def __init__(self, providers: Optional[List[SmsProvider]] = None):
        self.logger = logger
        if providers is None:
            providers = []
            if settings.sms_api_configured:
                providers.append(self._send_via_http_gateway)
            providers.append(self._send_via_console)
        self.providers = providers

    async def send(self, to_number: str, body: str) -> None:
        """
        Send a text message.

        Raises:
            DeliveryError: when no provider accepted the message
        """
        errors: List[str] = []
        for provider in self.providers:
            try:
                await provider(to_number, body)
                self.logger.info("SMS sent to %s using provider %s", to_number, provider.__name__)
                return
            except RuntimeError as e:
                errors.append(f"{provider.__name__}: {e}")
                self.logger.warning("SMS provider %s failed for %s: %s", provider.__name__, to_number, e)
        self.logger.error("All SMS providers failed for %s", to_number)
        raise DeliveryError("sms", to_number, errors)

    async def send_teen_invitation_sms(self, to_number: str, teen_name: str, code: str, expires_minutes: int) -> bool:
        body = (
            f"Hi {teen_name}! Your Family Hub invitation code is {code}. "
            f"It expires in {expires_minutes} minutes."
        )
        try:
            await self.send(to_number, body)
            return True
        except DeliveryError:
            return False

    async def _send_via_http_gateway(self, to_number: str, body: str) -> None:
        payload = {"from": settings.SMS_SENDER, "to": to_number, "text": body}
        headers = {"Authorization": f"Bearer {settings.SMS_API_KEY.get_secret_value()}"}
        async with httpx.AsyncClient(timeout=settings.SMS_REQUEST_TIMEOUT) as client:
            try:
                response = await client.post(settings.SMS_API_URL, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise RuntimeError(f"SMS gateway returned {exc.response.status_code}") from exc
            except httpx.RequestError as exc:
                raise RuntimeError(f"SMS gateway request failed: {exc}") from exc

    async def _send_via_console(self, to_number: str, body: str) -> None:
        self.logger.info("[CONSOLE SMS] To: %s | %s", to_number, body)


sms_manager = SmsManager()
