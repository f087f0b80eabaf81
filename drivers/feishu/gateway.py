# HTTP entry point for Feishu event subscriptions.
#
# Each request passes two optional gates before it is dispatched:
#   1. signature – only when an encrypt key is configured AND the request
#      carries X-Lark-Signature; not every Feishu request is signed.
#   2. decryption – only when an encrypt key is configured AND the body
#      wraps its payload in an "encrypt" field.
# A url_verification challenge is answered right after decryption and never
# reaches the event handlers.

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Awaitable, Callable

from aiohttp import web

import services.logger as log
from services.error import InvalidMessageError, SecurityError
from drivers.feishu.cipher import Cipher

l = log.get_logger()

SIGNATURE_HEADER = "X-Lark-Signature"
TIMESTAMP_HEADER = "X-Lark-Request-Timestamp"
NONCE_HEADER = "X-Lark-Request-Nonce"

EventHandler = Callable[[dict], Awaitable[None]]


@dataclass
class WebhookEnvelope:
    """One inbound request, alive only while the gateway handles it."""
    signature: str
    timestamp: str
    nonce: str
    raw_body: bytes


class WebhookGateway:

    def __init__(self, cipher: Cipher | None = None):
        self.cipher = cipher
        self._handlers: dict[str, EventHandler] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type] = handler

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def check_signature(self, env: WebhookEnvelope) -> None:
        if self.cipher is None or not env.signature:
            return
        if not self.cipher.verify(env.signature, env.timestamp, env.nonce, env.raw_body):
            raise SecurityError("webhook signature mismatch")

    def decrypt(self, body):
        if self.cipher is not None and isinstance(body, dict) and isinstance(body.get("encrypt"), str):
            try:
                return json.loads(self.cipher.decrypt(body["encrypt"]))
            except ValueError as e:
                raise InvalidMessageError(f"decrypted payload is not JSON: {e}") from e
        return body

    # ------------------------------------------------------------------
    # aiohttp handler
    # ------------------------------------------------------------------

    async def handle(self, request: web.Request) -> web.Response:
        env = WebhookEnvelope(
            signature=request.headers.get(SIGNATURE_HEADER, ""),
            timestamp=request.headers.get(TIMESTAMP_HEADER, ""),
            nonce=request.headers.get(NONCE_HEADER, ""),
            raw_body=await request.read(),
        )
        try:
            self.check_signature(env)
        except SecurityError as e:
            l.warning(f"Feishu gateway rejected request from {request.remote}: {e}")
            return web.json_response({"message": "forbidden"}, status=403)

        try:
            body = self.decrypt(json.loads(env.raw_body))
        except (ValueError, InvalidMessageError) as e:
            l.warning(f"Feishu gateway bad request: {e}")
            return web.json_response({"message": "bad request"}, status=400)

        if not isinstance(body, dict):
            return web.json_response({"message": "bad request"}, status=400)

        challenge = body.get("challenge")
        if body.get("type") == "url_verification" and isinstance(challenge, str):
            return web.json_response({"challenge": challenge})

        await self.dispatch(body)
        return web.json_response({})

    async def dispatch(self, body: dict) -> None:
        event_type = (body.get("header") or {}).get("event_type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            l.debug(f"Feishu gateway ignoring event type {event_type!r}")
            return
        await handler(body)
