# Canonical message → Discord wire calls.
#
# The chain is planned by services.transcode and executed here strictly in
# order.  A failing call aborts the rest of the message; calls that already
# went out stay sent.

from __future__ import annotations

from typing import Awaitable, Callable

import aiohttp

import services.logger as log
import services.media as media
from services import segment as seg
from services.error import InvalidMessageError
from services.segment import CanonicalMessage, MessageRef, Segment, SendResult
from services.transcode import AssetCall, ContentCall, EmbedCall, count_kind, plan, split_quote

l = log.get_logger()

MAX_WEBHOOK_EMBEDS = 10

# post(body=..., form=...) → decoded JSON response (or None for 204)
Poster = Callable[..., Awaitable["dict | None"]]


def render_inline(s: Segment) -> str | None:
    """Discord markup for inline segments, ``None`` for everything else."""
    kind = s.kind
    if kind == seg.TEXT:
        return s.get("content", "")
    if kind == seg.MENTION_USER and s.get("id"):
        return f"<@{s.get('id')}>"
    if kind == seg.MENTION_ALL:
        return "@everyone"
    if kind == seg.MENTION_HERE:
        return "@here"
    if kind == seg.CHANNEL_REF and s.get("id"):
        return f"<#{s.get('id')}>"
    if kind == seg.EMOJI and s.get("name") and s.get("id"):
        prefix = "a" if s.get("animated") else ""
        return f"<{prefix}:{s.get('name')}:{s.get('id')}>"
    return None


def reply_reference(ref: MessageRef) -> dict:
    reference = {"message_id": ref.message_id}
    if ref.channel_id:
        reference["channel_id"] = ref.channel_id
    return {"message_reference": reference}


def embed_body(s: Segment, addition: dict, is_webhook: bool) -> dict:
    embed = {k: s.get(k) for k in ("url", "title", "description") if s.get(k) is not None}
    if is_webhook:
        return {**addition, "embeds": [embed]}
    return {**addition, "embed": embed}


def render_edit(chain: list[Segment]) -> str:
    """Flatten a chain into the single content string an edit accepts."""
    if any(s.kind == seg.IMAGE for s in chain):
        raise InvalidMessageError("You can't include embed object(s) while editing message.")
    parts: list[str] = []
    for s in chain:
        markup = render_inline(s)
        if markup is not None:
            parts.append(markup)
        elif s.get("url"):
            parts.append(s.get("url"))
    return "".join(parts)


def validate(chain: list[Segment], is_webhook: bool) -> None:
    """Reject misuse before any wire call is issued."""
    if is_webhook and count_kind(chain, seg.LINK_CARD) > MAX_WEBHOOK_EMBEDS:
        raise InvalidMessageError(f"Up to {MAX_WEBHOOK_EMBEDS} embed objects")
    for s in chain:
        if s.kind in seg.ASSET_KINDS and not s.get("url"):
            raise InvalidMessageError(f"invalid {s.kind} segment: url expected")


class DiscordTranscoder:

    def __init__(
        self,
        session: aiohttp.ClientSession,
        asset_mode: str = "auto",
        max_file_size: int = 8 * 1024 * 1024,
        self_id: Callable[[], str] = lambda: "",
    ):
        self.session = session
        self.asset_mode = asset_mode
        self.max_file_size = max_file_size
        self._self_id = self_id

    async def deliver(
        self,
        post: Poster,
        message: CanonicalMessage,
        is_webhook: bool = False,
        addition: dict | None = None,
    ) -> SendResult:
        ref, chain = split_quote(message.chain)
        ref = ref or message.quote
        validate(chain, is_webhook)

        calls = plan(
            chain,
            render_inline,
            {**message.addition, **(addition or {})},
            reply=reply_reference(ref) if ref else None,
        )

        result = SendResult()
        for call in calls:
            if isinstance(call, ContentCall):
                resp = await post(body={**call.addition, "content": call.content})
            elif isinstance(call, AssetCall):
                resp = await self._send_asset(post, call)
            elif isinstance(call, EmbedCall):
                resp = await post(body=embed_body(call.segment, call.addition, is_webhook))
            else:
                continue
            if resp and resp.get("id"):
                result.message_ids.append(str(resp["id"]))

        l.debug(f"Discord delivered {len(calls)} wire call(s), ids={result.message_ids}")
        return result

    async def _send_asset(self, post: Poster, call: AssetCall):
        asset = await media.resolve(
            self.session,
            call.segment,
            self.asset_mode,
            max_bytes=self.max_file_size,
            self_id=self._self_id(),
        )
        if isinstance(asset, media.DirectUrl):
            return await post(body={**call.addition, "content": asset.url})
        return await post(form=media.build_multipart(asset, call.addition))
