from __future__ import annotations

import base64
import binascii
import io
import logging

import discord

from civicsense.commands import ChatHub, HubReply
from civicsense.config import Settings
from civicsense.models.core import Identity

log = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000


def image_attachment(data_uri: str | None) -> discord.File | None:
    if not data_uri or not data_uri.startswith("data:") or "," not in data_uri:
        return None
    header, encoded = data_uri.split(",", 1)
    extension = header[len("data:") :].split(";", 1)[0].split("/")[-1] or "png"
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        log.warning("vision_attachment_undecodable")
        return None
    return discord.File(io.BytesIO(raw), filename=f"proposal.{extension}")


async def send_reply(channel, reply: HubReply) -> None:
    text = reply.text[:DISCORD_MESSAGE_LIMIT]
    attachment = image_attachment(reply.image)
    if attachment is not None:
        await channel.send(text, file=attachment)
    else:
        await channel.send(text)


def run_discord_bot(hub: ChatHub, settings: Settings) -> None:
    if not settings.discord_token:
        raise RuntimeError("DISCORD_TOKEN is required to run the Discord bot")

    intents = discord.Intents.default()
    intents.message_content = True
    client = discord.Client(intents=intents)

    @client.event
    async def on_ready() -> None:
        user_name = str(client.user) if client.user else "unknown"
        log.info("logged_in_as=%s channel=%s", user_name, settings.discord_channel)

    @client.event
    async def on_message(message) -> None:
        if message.author == client.user or message.author.bot:
            return
        channel_name = getattr(message.channel, "name", "")
        if channel_name != settings.discord_channel:
            return

        async def notify(text: str) -> None:
            await message.channel.send(text)

        identity = Identity(user_id=str(message.author.id), display_name=message.author.display_name)
        replies = await hub.handle_message(identity, message.content, notify=notify)
        for reply in replies:
            await send_reply(message.channel, reply)

    log.info("starting_discord_bot")
    client.run(settings.discord_token)
