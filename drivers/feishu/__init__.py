# Feishu / Lark driver.
#
# Receive: Feishu pushes events to an HTTP endpoint you expose.
#          This driver starts an aiohttp server on a configurable port and
#          runs every request through drivers.feishu.gateway (signature
#          check, decryption, challenge handshake).  Set that URL in the
#          Feishu developer console under "Event Subscriptions" → "Request URL".
#
# Send: uses the Feishu IM v1 create-message / reply-message APIs via
#       lark-oapi.  Text and mentions are buffered into one text message;
#       images are uploaded and sent as image messages in chain order.
#
# Config keys (under feishu.<instance_id>):
#   app_id                 – Feishu app ID  (required)
#   app_secret             – Feishu app secret  (required)
#   encrypt_key            – Event encryption key  (leave "" to disable)
#   listen_port            – HTTP port to listen on  (default: 8080)
#   listen_path            – HTTP path for events    (default: "/feishu")
#   handle_external_assets – "download" (default) | "auto" | "direct"
#   max_file_size          – Max bytes per uploaded asset
#
# Rule channel keys:
#   chat_id – Feishu open chat ID, e.g. "oc_xxxxxxxxxxxxxxxxxx"

import asyncio
import io
import json

import aiohttp
from aiohttp import web
import lark_oapi as lark
from lark_oapi.api.im.v1 import (
    CreateMessageRequest, CreateMessageRequestBody,
    ReplyMessageRequest, ReplyMessageRequestBody,
    CreateImageRequest, CreateImageRequestBody,
    CreateFileRequest, CreateFileRequestBody,
)

import services.logger as log
import services.media as media
from services import segment as seg
from services.error import BridgeError, InvalidMessageError, TransportError
from services.config_schema import FeishuConfig
from services.segment import CanonicalMessage, Segment, SendResult
from services.transcode import AssetCall, ContentCall, EmbedCall, plan, split_quote
from drivers import BaseDriver
from drivers.feishu.cipher import Cipher
from drivers.feishu.gateway import WebhookGateway
from drivers.feishu.normalize import RECEIVE_EVENT, adapt_event

l = log.get_logger()


def render_inline(s: Segment) -> str | None:
    kind = s.kind
    if kind == seg.TEXT:
        return s.get("content", "")
    if kind == seg.MENTION_USER and s.get("id"):
        return f'<at user_id="{s.get("id")}"></at>'
    if kind in (seg.MENTION_ALL, seg.MENTION_HERE):
        return '<at user_id="all"></at>'
    if kind == seg.CHANNEL_REF and s.get("id"):
        return f"#{s.get('id')}"
    if kind == seg.EMOJI and s.get("name"):
        return f":{s.get('name')}:"
    return None


def card_text(s: Segment) -> str:
    return "\n".join(s.get(k) for k in ("title", "description", "url") if s.get(k))


class FeishuDriver(BaseDriver[FeishuConfig]):

    platform = "feishu"

    def __init__(self, instance_id: str, config: FeishuConfig, bridge):
        super().__init__(instance_id, config, bridge)
        self._client: lark.Client | None = None
        self._session: aiohttp.ClientSession | None = None
        cipher = Cipher(config.encrypt_key) if config.encrypt_key else None
        self.gateway = WebhookGateway(cipher)
        self.gateway.on(RECEIVE_EVENT, self._on_receive)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        web_app = web.Application()
        web_app.router.add_post(self.config.listen_path, self.gateway.handle)
        return web_app

    async def start(self):
        self.bridge.register_sender(self.instance_id, self.send)
        self._session = aiohttp.ClientSession()

        # Client for outgoing API calls
        self._client = (
            lark.Client.builder()
            .app_id(self.config.app_id)
            .app_secret(self.config.app_secret)
            .build()
        )

        port = self.config.listen_port
        path = self.config.listen_path
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", port)
        await site.start()
        l.info(f"Feishu [{self.instance_id}] HTTP server listening on 0.0.0.0:{port}{path}")

        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()
            await self.close()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _on_receive(self, body: dict):
        event = adapt_event(body, self.instance_id)
        if event is not None:
            await self.bridge.on_event(event)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, channel: dict, message: CanonicalMessage, **kwargs) -> SendResult:
        chat_id = channel.get("chat_id")
        if not chat_id:
            raise InvalidMessageError(f"Feishu [{self.instance_id}] send: no chat_id in channel {channel}")
        if self._client is None:
            raise BridgeError(f"Feishu [{self.instance_id}] send: driver not started")

        ref, chain = split_quote(message.chain)
        ref = ref or message.quote
        calls = plan(chain, render_inline, reply={"reply_to": ref.message_id} if ref else None)

        result = SendResult()
        for call in calls:
            reply_to = call.addition.get("reply_to")
            if isinstance(call, ContentCall):
                msg_id = await self._send_feishu_msg(chat_id, "text", {"text": call.content}, reply_to)
            elif isinstance(call, EmbedCall):
                msg_id = await self._send_feishu_msg(chat_id, "text", {"text": card_text(call.segment)}, reply_to)
            elif isinstance(call, AssetCall):
                msg_id = await self._send_asset(chat_id, call, reply_to)
            else:
                continue
            if msg_id:
                result.message_ids.append(msg_id)
        return result

    async def _send_asset(self, chat_id: str, call: AssetCall, reply_to: str | None) -> str:
        asset = await media.resolve(
            self._session,
            call.segment,
            self.config.handle_external_assets,
            max_bytes=self.config.max_file_size,
            self_id=self.config.app_id,
        )
        if isinstance(asset, media.DirectUrl):
            return await self._send_feishu_msg(chat_id, "text", {"text": asset.url}, reply_to)
        if asset.content_type.startswith("image/"):
            key = await self._upload_image(asset.data)
            return await self._send_feishu_msg(chat_id, "image", {"image_key": key}, reply_to)
        key = await self._upload_file(asset.data, asset.filename)
        return await self._send_feishu_msg(chat_id, "file", {"file_key": key}, reply_to)

    async def _call(self, what: str, fn, payload):
        """Run a synchronous lark-oapi call in the executor and check its result."""
        loop = asyncio.get_running_loop()
        try:
            resp = await loop.run_in_executor(None, fn)
        except Exception as e:
            l.error(f"Feishu [{self.instance_id}] {what} error: {e}")
            raise TransportError(what, payload, self.config.app_id) from e
        if not resp.success():
            l.error(f"Feishu [{self.instance_id}] {what} failed: code={resp.code} msg={resp.msg}")
            raise TransportError(what, payload, self.config.app_id)
        return resp

    async def _send_feishu_msg(self, chat_id: str, msg_type: str, content: dict, reply_to: str | None = None) -> str:
        body = json.dumps(content, ensure_ascii=False)
        if reply_to:
            req = (
                ReplyMessageRequest.builder()
                .message_id(reply_to)
                .request_body(
                    ReplyMessageRequestBody.builder()
                    .msg_type(msg_type)
                    .content(body)
                    .build()
                )
                .build()
            )
            resp = await self._call("im/v1/messages/reply", lambda: self._client.im.v1.message.reply(req), content)
        else:
            req = (
                CreateMessageRequest.builder()
                .receive_id_type("chat_id")
                .request_body(
                    CreateMessageRequestBody.builder()
                    .receive_id(chat_id)
                    .msg_type(msg_type)
                    .content(body)
                    .build()
                )
                .build()
            )
            resp = await self._call("im/v1/messages", lambda: self._client.im.v1.message.create(req), content)
        return resp.data.message_id if resp.data else ""

    async def _upload_image(self, data: bytes) -> str:
        body = (
            CreateImageRequestBody.builder()
            .image_type("message")
            .image(io.BytesIO(data))
            .build()
        )
        req = CreateImageRequest.builder().request_body(body).build()
        resp = await self._call("im/v1/images", lambda: self._client.im.v1.image.create(req), None)
        return resp.data.image_key

    async def _upload_file(self, data: bytes, fname: str) -> str:
        body = (
            CreateFileRequestBody.builder()
            .file_type("stream")
            .file_name(fname)
            .file(io.BytesIO(data))
            .build()
        )
        req = CreateFileRequest.builder().request_body(body).build()
        resp = await self._call("im/v1/files", lambda: self._client.im.v1.file.create(req), None)
        return resp.data.file_key


from drivers.registry import register
register("feishu", FeishuConfig, FeishuDriver)
