"""Outbound notification senders (SMS and email).

Senders never raise on delivery problems: every failure comes back as a
``DeliveryResult`` with ``success=False`` and a reason. The retry policy
lives here and nowhere else.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

import aiohttp
from loguru import logger

TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


@dataclass
class DeliveryResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


def mask_destination(destination: str) -> str:
    """Last four characters only, for logs."""
    return f"***{destination[-4:]}" if destination and len(destination) > 4 else "***"


class Notifier(ABC):
    """A channel that can deliver a short text message."""

    channel = "generic"

    def __init__(self, timeout: float = 10.0, max_attempts: int = 2):
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)

    @property
    @abstractmethod
    def configured(self) -> bool: ...

    @abstractmethod
    async def _post(self, session: aiohttp.ClientSession, destination: str, message: str) -> DeliveryResult:
        """Perform one delivery attempt."""

    async def send(self, destination: str, message: str) -> DeliveryResult:
        if not self.configured:
            return DeliveryResult(success=False, error=f"{self.channel} sender is not configured")
        if not destination:
            return DeliveryResult(success=False, error="No destination given")

        result = DeliveryResult(success=False, error="not attempted")
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as session:
                    result = await self._post(session, destination, message)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                result = DeliveryResult(success=False, error=f"{type(e).__name__}: {e}")
            if result.success or not _retryable(result):
                break
            logger.warning(
                f"{self.channel} delivery to {mask_destination(destination)} failed "
                f"(attempt {attempt}/{self.max_attempts}): {result.error}"
            )
        if result.success:
            logger.info(f"{self.channel} message delivered to {mask_destination(destination)}")
        return result


def _retryable(result: DeliveryResult) -> bool:
    # Client errors (4xx) will fail the same way again
    return not (result.error or "").startswith("HTTP 4")


async def _failure(resp) -> DeliveryResult:
    body = await resp.text()
    return DeliveryResult(success=False, error=f"HTTP {resp.status}: {body[:200]}")


class TwilioSmsSender(Notifier):
    channel = "sms"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, **kwargs):
        super().__init__(**kwargs)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def _post(self, session, destination, message):
        async with session.post(
            TWILIO_API_URL.format(sid=self.account_sid),
            auth=aiohttp.BasicAuth(self.account_sid, self.auth_token),
            data={"To": destination, "From": self.from_number, "Body": message},
        ) as resp:
            if resp.status >= 300:
                return await _failure(resp)
            payload = await resp.json()
        return DeliveryResult(success=True, provider_message_id=payload.get("sid"))


class HttpEmailSender(Notifier):
    """JSON email API (Resend-compatible payload)."""

    channel = "email"

    def __init__(self, api_url: str, api_key: str, from_address: str, subject: str = "Your verification code", **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.subject = subject

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key and self.from_address)

    async def _post(self, session, destination, message):
        async with session.post(
            self.api_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "from": self.from_address,
                "to": [destination],
                "subject": self.subject,
                "text": message,
            },
        ) as resp:
            if resp.status >= 300:
                return await _failure(resp)
            payload = await resp.json()
        return DeliveryResult(success=True, provider_message_id=payload.get("id"))
