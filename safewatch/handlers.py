import time

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup, Update
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from safewatch import config
from safewatch.errors import CapabilityDenied
from safewatch.geo import map_link
from safewatch.models import JobStatus, TrackingMode, TriggerKind

BTN_SOS = "🆘 SOS"
BTN_SHARE = "🔗 Поделиться геопозицией"
BTN_STATUS = "📍 Статус"
BTN_SEND_LOCATION = "📍 Отправить геопозицию"

JOB_STATUS_LABELS = {
    JobStatus.PENDING: "создана",
    JobStatus.IN_FLIGHT: "отправляется",
    JobStatus.DELIVERED: "доставлена",
    JobStatus.FAILED: "не доставлена",
    JobStatus.QUEUED_OFFLINE: "в очереди (нет сети)",
}


def main_menu_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [
            [KeyboardButton(BTN_SOS)],
            [KeyboardButton(BTN_SHARE), KeyboardButton(BTN_STATUS)],
            [KeyboardButton(BTN_SEND_LOCATION, request_location=True)],
        ],
        resize_keyboard=True,
        one_time_keyboard=False,
    )


def retrigger_keyboard(job_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton("🔁 Отправить повторно", callback_data=f"resend:{job_id}")]])


def is_owner(chat_id: int | None) -> bool:
    # пустой список: бот личный, принимаем любой чат
    if not config.OWNER_CHAT_IDS:
        return True
    return chat_id in config.OWNER_CHAT_IDS


def live_period_over(message, now_ts: float) -> bool:
    live_period = getattr(message.location, "live_period", None)
    if not live_period:
        return message.edit_date is not None
    return message.date.timestamp() + live_period <= now_ts


def build_handlers(engine, source, logger):
    async def owner_only(update: Update) -> bool:
        chat = update.effective_chat
        if chat is not None and is_owner(chat.id):
            return True
        logger.warning("FOREIGN_CHAT_REJECTED chat_id=%s", chat.id if chat else None)
        return False

    async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await owner_only(update):
            return
        await update.effective_message.reply_text(
            "SafeWatch запущен. Включите трансляцию геопозиции (live location), "
            "чтобы работали безопасные зоны.",
            reply_markup=main_menu_keyboard(),
        )

    async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await owner_only(update):
            return
        position = engine.get_last_position()
        shares = await engine.get_active_shares()
        lines = [f"Трекинг: {engine.tracker.state.value}"]
        if position is None:
            lines.append("Геопозиция: нет данных")
        else:
            age = int(time.time() - position.captured_at)
            lines.append(f"Геопозиция: {map_link(position.latitude, position.longitude)} ({age} сек назад)")
        lines.append(f"Зон: {len(engine.zones.snapshot())}")
        lines.append(f"Активных ссылок: {len(shares)}")
        lines.append(f"Сеть: {'онлайн' if engine.connectivity.is_online else 'офлайн'}")
        await update.effective_message.reply_text("\n".join(lines), reply_markup=main_menu_keyboard())

    async def cmd_sos(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await owner_only(update):
            return
        message = update.effective_message
        silent = bool(context.args) and context.args[0].lower() == "silent"
        kind = TriggerKind.SILENT if silent else TriggerKind.MANUAL
        try:
            job_id, stream = await engine.trigger_sos(kind)
        except ValueError as exc:
            logger.warning("SOS_REJECTED error=%s", exc)
            await message.reply_text("Нет доверенных контактов. Задайте TRUSTED_CONTACTS.")
            return

        status_message = None if silent else await message.reply_text("🆘 Тревога создана.")
        status = JobStatus.PENDING
        async for status in stream:
            logger.info("SOS_STATUS job_id=%s status=%s", job_id, status.value)
            if status_message is not None:
                await status_message.edit_text(f"🆘 Тревога: {JOB_STATUS_LABELS[status]}")
            if status == JobStatus.QUEUED_OFFLINE:
                break

        if status == JobStatus.FAILED:
            await message.reply_text("Не удалось доставить тревогу.", reply_markup=retrigger_keyboard(job_id))

    async def cmd_share(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await owner_only(update):
            return
        message = update.effective_message
        minutes = config.SHARE_DEFAULT_MINUTES
        max_views = None
        try:
            if context.args:
                minutes = int(context.args[0])
            if len(context.args or []) > 1:
                max_views = int(context.args[1])
            session_id, code = await engine.create_share(minutes, max_views=max_views)
        except ValueError as exc:
            await message.reply_text(f"Неверные параметры: {exc}\nПример: /share 60 5")
            return

        shares = {session.id: session for session in await engine.get_active_shares()}
        url = engine.sharing.share_url(shares[session_id])
        await message.reply_text(
            f"Ссылка на {minutes} мин: {url}\nКод: {code}\nОстановить: /stop_share {session_id}",
            reply_markup=main_menu_keyboard(),
        )

    async def cmd_stop_share(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await owner_only(update):
            return
        message = update.effective_message
        if context.args:
            stopped = [context.args[0]] if await engine.stop_share(context.args[0]) else []
        else:
            stopped = []
            for session in await engine.get_active_shares():
                if await engine.stop_share(session.id):
                    stopped.append(session.id)
        await message.reply_text(f"Остановлено ссылок: {len(stopped)}", reply_markup=main_menu_keyboard())

    async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        text = (update.effective_message.text or "").strip()
        if text == BTN_SOS:
            context.args = []
            await cmd_sos(update, context)
        elif text == BTN_SHARE:
            context.args = []
            await cmd_share(update, context)
        elif text == BTN_STATUS:
            await cmd_status(update, context)

    async def resend_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        await query.answer()
        if not await owner_only(update):
            return
        job_id = query.data.split(":", 1)[1]
        new_job_id = await engine.dispatcher.retrigger(job_id)
        if new_job_id is None:
            await query.message.reply_text("Эту тревогу нельзя отправить повторно.")
            return
        await query.message.reply_text("🆘 Тревога отправлена повторно.")

    async def handle_location_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not message or not message.location:
            return
        if not await owner_only(update):
            return

        location = message.location
        acc = getattr(location, "horizontal_accuracy", None)
        logger.info(
            "LOCATION_UPDATE chat_id=%s is_edited=%s lat=%s lon=%s acc=%s live_period=%s",
            message.chat_id,
            bool(update.edited_message),
            location.latitude,
            location.longitude,
            acc,
            location.live_period,
        )

        now = time.time()
        if update.edited_message and live_period_over(message, now):
            await source.revoke("live_period_ended")
            await message.reply_text("Трансляция геопозиции завершена, трекинг приостановлен.")
            return

        captured_at = (message.edit_date or message.date).timestamp()
        await source.feed(location.latitude, location.longitude, acc, captured_at, location.heading)

        if location.live_period and not engine.tracker.is_active():
            try:
                engine.start_tracking(TrackingMode.FOREGROUND)
            except CapabilityDenied as exc:
                logger.warning("TRACKING_START_FAILED error=%s", exc)
                return
            # первая точка пришла до подписки
            await source.feed(location.latitude, location.longitude, acc, captured_at, location.heading)
            await message.reply_text("📡 Трекинг включён.", reply_markup=main_menu_keyboard())

    return [
        CommandHandler("start", cmd_start),
        CommandHandler("status", cmd_status),
        CommandHandler("sos", cmd_sos, block=False),
        CommandHandler("share", cmd_share),
        CommandHandler("stop_share", cmd_stop_share),
        MessageHandler(filters.UpdateType.MESSAGE & filters.LOCATION, handle_location_message),
        MessageHandler(filters.UpdateType.EDITED_MESSAGE & filters.LOCATION, handle_location_message),
        MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text, block=False),
        CallbackQueryHandler(resend_callback, pattern=r"^resend:"),
    ]
