from telegram import BotCommand
from telegram.ext import Application

from safewatch import config
from safewatch.connectivity import ConnectivityProbe, ConnectivitySignal
from safewatch.engine import SafetyEngine
from safewatch.geocode import ReverseGeocoder
from safewatch.handlers import build_handlers
from safewatch.location_source import TelegramLocationSource
from safewatch.notify import RoutingChannel, SmsGatewayChannel, TelegramPushChannel
from safewatch.offline_queue import OfflineQueue
from safewatch.store_client import DocumentStoreClient, MemoryDocumentStore


class SafeWatchApp:
    def __init__(self, logger) -> None:
        self.logger = logger

        if not config.BOT_TOKEN:
            raise RuntimeError("BOT_TOKEN пуст.")
        if not config.TRUSTED_CONTACTS:
            logger.warning("TRUSTED_CONTACTS_EMPTY alerts will be rejected")

        if config.STORE_API_BASE and config.STORE_API_KEY:
            self.store = DocumentStoreClient(config.STORE_API_BASE, config.STORE_API_KEY, config.USER_ID, logger)
        else:
            logger.warning("STORE_API_NOT_CONFIGURED using in-memory store")
            self.store = MemoryDocumentStore(config.USER_ID)

        self.application = (
            Application.builder()
            .token(config.BOT_TOKEN)
            .post_init(self._post_init)
            .post_shutdown(self._post_shutdown)
            .build()
        )

        self.source = TelegramLocationSource(logger)
        self.sms = SmsGatewayChannel(config.SMS_API_URL, config.SMS_API_KEY, logger, sender_id=config.SMS_SENDER_ID)
        self.channel = RoutingChannel(sms=self.sms, push=TelegramPushChannel(self.application.bot, logger))
        self.geocoder = ReverseGeocoder(logger) if config.GEOCODER_ENABLED else None
        self.connectivity = ConnectivitySignal(online=True)
        self.engine = SafetyEngine(
            self.source,
            self.store,
            self.channel,
            logger,
            connectivity=self.connectivity,
            queue=OfflineQueue(config.OFFLINE_QUEUE_PATH, logger),
            geocoder=self.geocoder,
            probe=ConnectivityProbe(self.connectivity),
        )

    async def _post_init(self, app: Application) -> None:
        commands = [
            BotCommand("start", "Запустить бота и открыть меню"),
            BotCommand("sos", "Отправить тревогу доверенным контактам"),
            BotCommand("share", "Поделиться геопозицией: /share <мин> [просмотров]"),
            BotCommand("stop_share", "Остановить ссылки на геопозицию"),
            BotCommand("status", "Показать статус"),
        ]
        await app.bot.set_my_commands(commands)
        await self.engine.start()

    async def _post_shutdown(self, app: Application) -> None:
        await self.engine.aclose()
        await self.sms.aclose()
        if self.geocoder is not None:
            await self.geocoder.aclose()
        await self.store.aclose()

    def register_handlers(self, app: Application) -> None:
        for handler in build_handlers(self.engine, self.source, self.logger):
            app.add_handler(handler)

    def run(self) -> None:
        self.register_handlers(self.application)
        print("Bot started (polling). Ctrl+C to stop.")
        self.application.run_polling(
            allowed_updates=["message", "edited_message", "callback_query"],
        )
