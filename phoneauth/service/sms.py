from __future__ import annotations

from typing import Optional

import httpx

from phoneauth.config import Settings, SMSProvider
from phoneauth.logging import get_logger

logger = get_logger(__name__)

COUNTRY_PREFIX = "+880"
OTP_MESSAGE = "Your verification code is {code}. It expires in {minutes} minutes."


def to_e164(phone: str) -> str:
    """Convert a national number like ``01712345678`` to ``+8801712345678``."""
    phone = phone.strip()
    if phone.startswith("+"):
        return phone
    if phone.startswith("880"):
        return f"+{phone}"
    if phone.startswith("0"):
        phone = phone[1:]
    return f"{COUNTRY_PREFIX}{phone}"


class SMSSender:
    """Outbound OTP delivery.

    ``send_otp`` returns ``True`` when the provider accepted the message and
    ``False`` otherwise. Implementations never log the code.
    """

    name = "base"

    async def send_otp(self, phone: str, code: str) -> bool:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class ConsoleSMSSender(SMSSender):
    """Development sender that only records the destination in the log."""

    name = "console"

    async def send_otp(self, phone: str, code: str) -> bool:
        logger.info("sms_console_otp", recipient=to_e164(phone), provider=self.name)
        return True


class HTTPSMSSender(SMSSender):
    """Sends OTPs through a JSON HTTP gateway.

    The request is ``POST {api_url}`` with body ``{"to", "sender", "message"}``
    and a bearer API key. Transport failures and non-2xx replies are logged and
    reported as ``False``; they never raise.
    """

    name = "http"

    def __init__(
        self,
        api_url: str,
        *,
        api_key: Optional[str] = None,
        sender_id: Optional[str] = None,
        timeout: float = 10.0,
        otp_expiry_minutes: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self.otp_expiry_minutes = otp_expiry_minutes
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def send_otp(self, phone: str, code: str) -> bool:
        recipient = to_e164(phone)
        payload = {
            "to": recipient,
            "sender": self.sender_id,
            "message": OTP_MESSAGE.format(code=code, minutes=self.otp_expiry_minutes),
        }
        try:
            response = await self._get_client().post(self.api_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_http_rejected",
                recipient=recipient,
                status_code=exc.response.status_code,
            )
            return False
        except httpx.TimeoutException as exc:
            logger.error("sms_http_timeout", recipient=recipient, error=str(exc))
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_http_error",
                recipient=recipient,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_http_sent", recipient=recipient, status_code=response.status_code)
        return True

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_sms_sender(settings: Settings) -> SMSSender:
    if settings.sms_provider == SMSProvider.HTTP:
        return HTTPSMSSender(
            settings.sms_api_url or "",
            api_key=settings.sms_api_key,
            sender_id=settings.sms_sender_id,
            timeout=settings.sms_timeout_seconds,
            otp_expiry_minutes=settings.otp_expiry_minutes,
        )
    return ConsoleSMSSender()
