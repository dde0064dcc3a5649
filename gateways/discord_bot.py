import logging
from typing import Optional

import discord
from discord.ext import commands

from beacon.envelope import OutboundMessage

from .base import GatewayAdapter

log = logging.getLogger(__name__)

INVOCATION = "beacon"


def should_bot_reply(message: discord.Message, bot_user: Optional[discord.User]) -> bool:
    """Direct messages always; guild messages only when the bot is summoned."""
    if message.guild is None:
        return True
    content = (message.content or "").strip()
    if content.lower().startswith(INVOCATION) or content.startswith("/"):
        return True
    if bot_user is not None:
        if any(user.id == bot_user.id for user in message.mentions):
            return True
    return False


def strip_invocation(content: str, bot_user: Optional[discord.User]) -> str:
    stripped = content.strip()
    if stripped.lower().startswith(INVOCATION):
        return stripped[len(INVOCATION):].lstrip(" ,:;-\t")
    if bot_user is not None:
        for variant in (bot_user.mention, f"<@{bot_user.id}>", f"<@!{bot_user.id}>"):
            if variant in stripped:
                stripped = stripped.replace(variant, "", 1).strip()
    return stripped


class DiscordClient(commands.Bot):
    def __init__(self, gateway: "DiscordGateway", *, guild_id: Optional[int] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix="!", intents=intents)
        self.gateway = gateway
        self.guild_id = guild_id

    async def on_ready(self):
        log.info("Discord gateway ready as %s", self.user)

    async def on_message(self, message: discord.Message):
        if not message or not message.content:
            return
        if message.author.bot:
            return
        if self.guild_id and message.guild is not None and message.guild.id != self.guild_id:
            return
        if not should_bot_reply(message, self.user):
            return
        content = message.content
        if message.guild is not None:
            content = strip_invocation(content, self.user)
            if not content:
                return
        reply_to = message.reference.message_id if message.reference else None
        await self.gateway.ingest(
            str(message.author.id),
            content,
            message_id=str(message.id),
            reply_to=str(reply_to) if reply_to else None,
            raw={"content": message.content, "channel_id": str(message.channel.id)},
            has_media=bool(message.attachments),
            ctx={"channelId": str(message.channel.id), "isGroup": message.guild is not None},
        )


class DiscordGateway(GatewayAdapter):
    gateway_type = "discord"

    def __init__(self, token: str, *, guild_id: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self.token = token
        self.client = DiscordClient(self, guild_id=guild_id)

    async def _channel(self, outbound: OutboundMessage):
        channel_id = outbound.ctx.get("channelId")
        if channel_id and outbound.ctx.get("isGroup"):
            channel = self.client.get_channel(int(channel_id))
            if channel is None:
                channel = await self.client.fetch_channel(int(channel_id))
            return channel
        return await self.client.fetch_user(int(outbound.to))

    async def deliver(self, outbound: OutboundMessage) -> Optional[str]:
        target = await self._channel(outbound)
        reference = None
        quoted = outbound.quoted_message_id
        if quoted and str(quoted).isdigit() and outbound.ctx.get("isGroup"):
            reference = discord.MessageReference(
                message_id=int(quoted),
                channel_id=int(outbound.ctx["channelId"]),
                fail_if_not_exists=False,
            )
        sent = await target.send(outbound.body, reference=reference)
        return str(sent.id)

    async def send_text(self, to: str, text: str) -> None:
        user = await self.client.fetch_user(int(to))
        await user.send(text)

    async def start(self):
        self.start_routing()
        try:
            await self.client.start(self.token)
        finally:
            await self.client.close()

    async def stop(self):
        await super().stop()
        await self.client.close()
