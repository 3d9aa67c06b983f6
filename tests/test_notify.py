import json
import unittest

import httpx
from telegram.error import Forbidden, NetworkError

from safewatch.errors import DeliveryFailed
from safewatch.logging_setup import mask_address
from safewatch.notify import (
    RoutingChannel,
    SmsGatewayChannel,
    TelegramPushChannel,
    normalize_phone,
    parse_push_address,
)


class DummyLogger:
    def debug(self, *args, **kwargs):
        pass

    def info(self, *args, **kwargs):
        pass

    def warning(self, *args, **kwargs):
        pass

    def error(self, *args, **kwargs):
        pass


class DummyMessage:
    message_id = 42


class DummyBot:
    def __init__(self, error=None) -> None:
        self.error = error
        self.sent = []

    async def send_message(self, chat_id, text):
        if self.error is not None:
            raise self.error
        self.sent.append((chat_id, text))
        return DummyMessage()


class RecordingChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self.sent = []

    async def send(self, address, message):
        self.sent.append(address)
        return self.name

    async def aclose(self):
        pass


def make_sms(handler) -> SmsGatewayChannel:
    channel = SmsGatewayChannel("https://sms.example.com/send", "key", DummyLogger(), sender_id="SAFEWATCH")
    channel._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return channel


class AddressTests(unittest.TestCase):
    def test_normalize_phone(self):
        self.assertEqual(normalize_phone("+7 (999) 123-45-67"), "+79991234567")
        self.assertIsNone(normalize_phone("12345"))
        self.assertIsNone(normalize_phone(""))

    def test_parse_push_address(self):
        self.assertEqual(parse_push_address("tg:123456"), 123456)
        self.assertIsNone(parse_push_address("tg:abc"))
        self.assertIsNone(parse_push_address("+79991234567"))

    def test_mask_address(self):
        self.assertEqual(mask_address("+79991234567"), "********4567")
        self.assertEqual(mask_address("tg:123456"), "tg:123456")


class SmsGatewayChannelTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_posts_message(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers.get("authorization")
            captured["body"] = json.loads(request.content.decode())
            return httpx.Response(200, json={"message_id": "sms-1"})

        channel = make_sms(handler)
        self.addAsyncCleanup(channel.aclose)

        delivery_id = await channel.send("+79991234567", "help")

        self.assertEqual(delivery_id, "sms-1")
        self.assertEqual(captured["auth"], "Bearer key")
        self.assertEqual(captured["body"]["to"], "+79991234567")
        self.assertEqual(captured["body"]["from"], "SAFEWATCH")
        self.assertEqual(captured["body"]["message"], "help")

    async def test_client_error_is_not_retryable(self):
        channel = make_sms(lambda request: httpx.Response(400, json={"error": "bad_number"}))
        self.addAsyncCleanup(channel.aclose)

        with self.assertRaises(DeliveryFailed) as ctx:
            await channel.send("+79991234567", "help")

        self.assertFalse(ctx.exception.retryable)

    async def test_rate_limit_and_server_errors_are_retryable(self):
        for status in (429, 503):
            channel = make_sms(lambda request, status=status: httpx.Response(status))
            self.addAsyncCleanup(channel.aclose)

            with self.assertRaises(DeliveryFailed) as ctx:
                await channel.send("+79991234567", "help")

            self.assertTrue(ctx.exception.retryable)

    async def test_network_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        channel = make_sms(handler)
        self.addAsyncCleanup(channel.aclose)

        with self.assertRaises(DeliveryFailed) as ctx:
            await channel.send("+79991234567", "help")

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.reason, "ConnectError")

    async def test_invalid_phone_rejected_without_request(self):
        calls = []
        channel = make_sms(lambda request: calls.append(request) or httpx.Response(200, json={}))
        self.addAsyncCleanup(channel.aclose)

        with self.assertRaises(DeliveryFailed) as ctx:
            await channel.send("12345", "help")

        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(calls, [])


class TelegramPushChannelTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_returns_message_id(self):
        bot = DummyBot()
        channel = TelegramPushChannel(bot, DummyLogger())

        delivery_id = await channel.send("tg:777", "help")

        self.assertEqual(delivery_id, "42")
        self.assertEqual(bot.sent, [(777, "help")])

    async def test_blocked_bot_is_not_retryable(self):
        channel = TelegramPushChannel(DummyBot(Forbidden("bot was blocked by the user")), DummyLogger())

        with self.assertRaises(DeliveryFailed) as ctx:
            await channel.send("tg:777", "help")

        self.assertFalse(ctx.exception.retryable)

    async def test_network_error_is_retryable(self):
        channel = TelegramPushChannel(DummyBot(NetworkError("timed out")), DummyLogger())

        with self.assertRaises(DeliveryFailed) as ctx:
            await channel.send("tg:777", "help")

        self.assertTrue(ctx.exception.retryable)


class RoutingChannelTests(unittest.IsolatedAsyncioTestCase):
    async def test_routes_by_address_format(self):
        sms = RecordingChannel("sms")
        push = RecordingChannel("push")
        channel = RoutingChannel(sms=sms, push=push)

        self.assertEqual(await channel.send("+79991234567", "help"), "sms")
        self.assertEqual(await channel.send("tg:777", "help"), "push")
        self.assertEqual(sms.sent, ["+79991234567"])
        self.assertEqual(push.sent, ["tg:777"])

    async def test_unknown_address_rejected(self):
        channel = RoutingChannel(sms=RecordingChannel("sms"))

        with self.assertRaises(DeliveryFailed) as ctx:
            await channel.send("mail@example.com", "help")
        self.assertFalse(ctx.exception.retryable)

        with self.assertRaises(DeliveryFailed):
            await channel.send("tg:777", "help")
