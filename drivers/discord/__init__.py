# Discord driver.
#
# Receive: requires a bot token (bot_token in config).
#          discord.py keeps the gateway connection alive; raw dispatch
#          payloads are taken from on_socket_raw_receive and normalized by
#          drivers.discord.normalize, so MESSAGE_CREATE and MESSAGE_UPDATE
#          go through the same path.
#
# Send:    two modes controlled by "send_method" in config:
#   "webhook" (default) – executes the webhook in webhook_url.
#                          Supports per-message username/avatar via
#                          webhook_title / webhook_avatar in rule msg config.
#   "bot"               – POST /channels/{channel_id}/messages with the bot.
#
# Config keys (under discord.<instance_id>):
#   bot_token              – Required for receive and bot-send mode.
#   send_method            – "webhook" (default) | "bot"
#   webhook_url            – Required when send_method == "webhook"
#   endpoint               – REST base URL (default https://discord.com/api/v10)
#   handle_external_assets – "auto" (default) | "download" | "direct"
#   max_file_size          – Max bytes per uploaded asset (default 8 MB)
#   request_timeout        – Seconds per REST call (default 30)
#   quote_cache_ttl        – Seconds a fetched quoted message is reused (default 60)
#
# Rule channel keys:
#   channel_id – Discord channel snowflake (bot mode)

import json
import re

import aiohttp
import discord

import services.logger as log
from services.error import BridgeError, InvalidMessageError
from services.config_schema import DiscordConfig
from services.segment import CanonicalMessage, SendResult
from drivers import BaseDriver
from drivers.discord.api import DiscordApi
from drivers.discord.normalize import adapt_event, adapt_message, attach_quote
from drivers.discord.transcode import DiscordTranscoder, render_edit

l = log.get_logger()

_WEBHOOK_RE = re.compile(r"/webhooks/(\d+)/([^/?#]+)")


def parse_webhook_url(url: str) -> tuple[str, str]:
    m = _WEBHOOK_RE.search(url or "")
    if m is None:
        raise InvalidMessageError(f"not a Discord webhook URL: {url!r}")
    return m.group(1), m.group(2)


class DiscordDriver(BaseDriver[DiscordConfig]):

    platform = "discord"

    def __init__(self, instance_id: str, config: DiscordConfig, bridge):
        super().__init__(instance_id, config, bridge)
        self._client: discord.Client | None = None
        self._session: aiohttp.ClientSession | None = None
        self.api: DiscordApi | None = None
        self.transcoder: DiscordTranscoder | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, session: aiohttp.ClientSession | None = None):
        """Create the HTTP side of the driver without connecting the gateway."""
        self._session = session or aiohttp.ClientSession()
        self.api = DiscordApi(
            self._session,
            token=self.config.bot_token,
            endpoint=self.config.endpoint,
            timeout=self.config.request_timeout,
            quote_cache_ttl=self.config.quote_cache_ttl,
        )
        self.transcoder = DiscordTranscoder(
            self._session,
            asset_mode=self.config.handle_external_assets,
            max_file_size=self.config.max_file_size,
            self_id=lambda: self.api.self_id,
        )

    async def start(self):
        self.bridge.register_sender(self.instance_id, self.send)
        self.open()

        if not self.config.bot_token:
            l.warning(
                f"Discord [{self.instance_id}] no bot_token configured, "
                "receive disabled, send-only via webhook"
            )
            return

        intents = discord.Intents.default()
        intents.message_content = True
        self._client = discord.Client(intents=intents, enable_debug_events=True)

        @self._client.event
        async def on_ready():
            self.api.self_id = str(self._client.user.id)
            l.info(f"Discord [{self.instance_id}] logged in as {self._client.user}")

        @self._client.event
        async def on_socket_raw_receive(raw: str):
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError):
                return
            if payload.get("op") == 0:
                await self.on_dispatch(payload)

        try:
            # Blocks until the bot disconnects
            await self._client.start(self.config.bot_token)
        finally:
            await self.close()

    async def close(self):
        if self._client is not None and not self._client.is_closed():
            await self._client.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def on_dispatch(self, payload: dict):
        try:
            event = await adapt_event(payload, self.instance_id, self.api.self_id, self.api.get_message)
        except BridgeError as e:
            l.error(f"Discord [{self.instance_id}] failed to normalize {payload.get('t')}: {e}")
            return
        if event is not None:
            await self.bridge.on_event(event)

    async def get_message(self, channel_id: str, message_id: str) -> CanonicalMessage:
        meta = await self.api.get_message(channel_id, message_id)
        msg = adapt_message(meta)
        await attach_quote(msg, meta, self.api.get_message)
        return msg

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, channel: dict, message: CanonicalMessage, **kwargs) -> SendResult:
        if self.config.send_method == "webhook" and self.config.webhook_url:
            webhook_id, token = parse_webhook_url(self.config.webhook_url)
            passthrough = {}
            if title := kwargs.get("webhook_title"):
                passthrough["username"] = title
            if avatar := kwargs.get("webhook_avatar"):
                passthrough["avatar_url"] = avatar
            return await self.execute_webhook(
                webhook_id, token, message, wait=self.config.webhook_wait, **passthrough
            )

        channel_id = channel.get("channel_id")
        if not channel_id:
            raise InvalidMessageError(f"Discord [{self.instance_id}] send: no channel_id in {channel}")
        return await self.send_message(str(channel_id), message)

    async def send_message(self, channel_id: str, message: CanonicalMessage) -> SendResult:
        async def post(body=None, form=None):
            return await self.api.create_message(channel_id, body=body, form=form)
        return await self.transcoder.deliver(post, message)

    async def execute_webhook(
        self,
        webhook_id: str,
        token: str,
        message: CanonicalMessage,
        wait: bool = True,
        **passthrough,
    ) -> SendResult:
        async def post(body=None, form=None):
            return await self.api.execute_webhook(webhook_id, token, body=body, form=form, wait=wait)
        return await self.transcoder.deliver(post, message, is_webhook=True, addition=passthrough)

    async def edit_message(self, channel_id: str, message_id: str, message: CanonicalMessage):
        content = render_edit(message.chain)
        return await self.api.edit_message(channel_id, message_id, {"content": content})

    async def delete_message(self, channel_id: str, message_id: str):
        await self.api.delete_message(channel_id, message_id)


from drivers.registry import register
register("discord", DiscordConfig, DiscordDriver)
