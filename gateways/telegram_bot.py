import asyncio
import logging
from typing import Optional

from telegram import ReplyParameters, Update
from telegram.constants import ChatType
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from beacon.envelope import OutboundMessage

from .base import GatewayAdapter

log = logging.getLogger(__name__)


class TelegramGateway(GatewayAdapter):
    gateway_type = "telegram"

    def __init__(self, token: str, **kwargs):
        super().__init__(**kwargs)
        self.application = Application.builder().token(token).build()
        self.application.add_handler(MessageHandler(filters.TEXT, self.handle_message))
        self._stop_event = asyncio.Event()

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not message.text or not user or user.is_bot or not chat:
            return
        # Group chats are only served when the bot is addressed.
        if chat.type != ChatType.PRIVATE and not self._addressed(message.text, context):
            return
        reply_to = message.reply_to_message.message_id if message.reply_to_message else None
        await self.ingest(
            str(user.id),
            message.text,
            message_id=str(message.message_id),
            reply_to=str(reply_to) if reply_to else None,
            raw=message.to_dict(),
            ctx={"chatId": str(chat.id), "isGroup": chat.type != ChatType.PRIVATE},
        )

    def _addressed(self, text: str, context: ContextTypes.DEFAULT_TYPE) -> bool:
        lowered = text.strip().lower()
        if lowered.startswith("beacon") or lowered.startswith("/"):
            return True
        username = context.bot.username if context.bot else None
        return bool(username and f"@{username.lower()}" in lowered)

    async def deliver(self, outbound: OutboundMessage) -> Optional[str]:
        chat_id = outbound.ctx.get("chatId") or outbound.to
        reply = None
        quoted = outbound.quoted_message_id
        if quoted and str(quoted).isdigit():
            reply = ReplyParameters(message_id=int(quoted), allow_sending_without_reply=True)
        sent = await self.application.bot.send_message(
            chat_id=int(chat_id), text=outbound.body, reply_parameters=reply
        )
        return str(sent.message_id)

    async def send_text(self, to: str, text: str) -> None:
        await self.application.bot.send_message(chat_id=int(to), text=text)

    async def start(self):
        self.start_routing()
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()

    async def stop(self):
        await super().stop()
        self._stop_event.set()
