import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from telegram.error import BadRequest, Forbidden, TelegramError

from safewatch import config
from safewatch.errors import DeliveryFailed
from safewatch.logging_setup import mask_address

PHONE_RE = re.compile(r"^\+[1-9]\d{9,14}$")
PUSH_PREFIX = "tg:"


def normalize_phone(raw: str) -> Optional[str]:
    value = str(raw or "").strip()
    digits = re.sub(r"\D", "", value)
    if not digits:
        return None
    phone = f"+{digits}"
    return phone if PHONE_RE.match(phone) else None


def is_phone_number(address: str) -> bool:
    return bool(PHONE_RE.match(str(address or "")))


def parse_push_address(address: str) -> Optional[int]:
    value = str(address or "")
    if not value.startswith(PUSH_PREFIX):
        return None
    try:
        return int(value[len(PUSH_PREFIX):])
    except ValueError:
        return None


class NotificationChannel(ABC):
    @abstractmethod
    async def send(self, address: str, message: str) -> str:
        """Deliver ``message`` and return a delivery id, or raise DeliveryFailed."""

    async def aclose(self) -> None:
        return None


class SmsGatewayChannel(NotificationChannel):
    def __init__(self, api_url: str, api_key: str, logger, *, sender_id: str | None = None) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id or config.SMS_SENDER_ID
        self.logger = logger
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=config.DELIVERY_TIMEOUT_SEC, write=5.0, pool=5.0),
            headers={"User-Agent": "safewatch/1.0"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, address: str, message: str) -> str:
        if not self.api_url or not self.api_key:
            raise DeliveryFailed(address, "sms_not_configured", retryable=False)
        if not is_phone_number(address):
            raise DeliveryFailed(address, "invalid_phone", retryable=False)

        try:
            response = await self._client.post(
                self.api_url,
                json={"to": address, "from": self.sender_id, "message": message, "type": "emergency"},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            self.logger.warning("SMS_SEND_EXCEPTION to=%s error_type=%s error=%s", mask_address(address), type(exc).__name__, exc)
            raise DeliveryFailed(address, type(exc).__name__) from exc

        if response.status_code >= 400:
            self.logger.warning(
                "SMS_SEND_NON_2XX to=%s status=%s body=%s",
                mask_address(address),
                response.status_code,
                response.text[:200],
            )
            raise DeliveryFailed(
                address,
                f"status={response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {}
        message_id = payload.get("message_id") or payload.get("id")
        self.logger.info("SMS_SENT to=%s message_id=%s", mask_address(address), message_id)
        return str(message_id or "")


class TelegramPushChannel(NotificationChannel):
    def __init__(self, bot, logger) -> None:
        self.bot = bot
        self.logger = logger

    async def send(self, address: str, message: str) -> str:
        chat_id = parse_push_address(address)
        if chat_id is None:
            raise DeliveryFailed(address, "invalid_push_address", retryable=False)
        try:
            sent = await self.bot.send_message(chat_id=chat_id, text=message)
        except (BadRequest, Forbidden) as exc:
            self.logger.warning("PUSH_SEND_REJECTED chat_id=%s error=%s", chat_id, exc)
            raise DeliveryFailed(address, str(exc), retryable=False) from exc
        except TelegramError as exc:
            self.logger.warning("PUSH_SEND_ERROR chat_id=%s error=%s", chat_id, exc)
            raise DeliveryFailed(address, str(exc)) from exc
        self.logger.info("PUSH_SENT chat_id=%s message_id=%s", chat_id, sent.message_id)
        return str(sent.message_id)


class RoutingChannel(NotificationChannel):
    """Picks SMS for phone numbers and Telegram push for ``tg:<chat_id>``."""

    def __init__(self, *, sms: NotificationChannel | None = None, push: NotificationChannel | None = None) -> None:
        self.sms = sms
        self.push = push

    async def send(self, address: str, message: str) -> str:
        if str(address).startswith(PUSH_PREFIX):
            channel = self.push
        elif is_phone_number(address):
            channel = self.sms
        else:
            raise DeliveryFailed(address, "unsupported_address", retryable=False)
        if channel is None:
            raise DeliveryFailed(address, "channel_unavailable", retryable=False)
        return await channel.send(address, message)

    async def aclose(self) -> None:
        for channel in (self.sms, self.push):
            if channel is not None:
                await channel.aclose()
