# Discord → canonical message.
#
# https://discord.com/developers/docs/reference#message-formatting
#
# Inline markup is tokenized in a single left-to-right pass.  Alternatives
# are listed in precedence order, so where two patterns could match at the
# same position the earlier one wins.  Every occurrence is converted.

from __future__ import annotations

import re
from datetime import datetime
from typing import Awaitable, Callable

import services.logger as log
from services import segment as seg
from services.segment import CanonicalMessage, InboundEvent, MessageRef, Segment

l = log.get_logger()

_MARKUP_RE = re.compile(
    r"<@[!&]?(?P<user>\d+)>"
    r"|<:(?P<name>\w+):(?P<emoji>\d+)>"
    r"|<a:(?P<aname>\w+):(?P<aemoji>\d+)>"
    r"|(?P<everyone>@everyone)"
    r"|(?P<here>@here)"
    r"|<#(?P<channel>\d+)>"
)

_CDN = "https://cdn.discordapp.com"

_EVENT_TYPES = {
    "MESSAGE_CREATE": "message",
    "MESSAGE_UPDATE": "message-updated",
    "MESSAGE_DELETE": "message-deleted",
}

MessageFetcher = Callable[[str, str], Awaitable[dict]]


def parse_content(content: str) -> list[Segment]:
    chain: list[Segment] = []
    pos = 0
    for m in _MARKUP_RE.finditer(content):
        if m.start() > pos:
            chain.append(seg.text(content[pos:m.start()]))
        pos = m.end()
        if m.group("user"):
            chain.append(seg.mention_user(m.group("user")))
        elif m.group("emoji"):
            chain.append(seg.emoji(m.group("name"), m.group("emoji")))
        elif m.group("aemoji"):
            chain.append(seg.emoji(m.group("aname"), m.group("aemoji"), animated=True))
        elif m.group("everyone"):
            chain.append(seg.mention_all())
        elif m.group("here"):
            chain.append(seg.mention_here())
        else:
            chain.append(seg.channel_ref(m.group("channel")))
    if pos < len(content):
        chain.append(seg.text(content[pos:]))
    return chain


def _adapt_embed(embed: dict) -> Segment | None:
    kind = embed.get("type")
    video = embed.get("video") or {}
    thumbnail = embed.get("thumbnail") or {}
    if kind == "video":
        return seg.video(embed.get("url"), proxy_url=video.get("proxy_url"))
    if kind == "image":
        return seg.image(thumbnail.get("url"), proxy_url=thumbnail.get("proxy_url"))
    if kind == "gifv":
        return seg.video(video.get("url"))
    if kind in ("link", "rich"):
        return seg.link_card(embed.get("url"), embed.get("title"), embed.get("description"))
    return None


def _timestamp(value: str | None) -> int:
    if not value:
        return 0
    try:
        return int(datetime.fromisoformat(value).timestamp() * 1000)
    except ValueError:
        return 0


def _avatar_url(author: dict) -> str:
    avatar = author.get("avatar")
    if not avatar or not author.get("id"):
        return ""
    return f"{_CDN}/avatars/{author['id']}/{avatar}.png"


def adapt_message(meta: dict) -> CanonicalMessage:
    """Map a raw Discord message object onto the canonical shape.

    Attachments follow the text as image segments, then embeds in order.
    Update events may carry only ``id``/``embeds``/``channel_id``/``guild_id``;
    missing fields simply stay empty.
    """
    chain = parse_content(meta.get("content") or "")
    for att in meta.get("attachments") or []:
        chain.append(seg.image(att.get("url"), proxy_url=att.get("proxy_url")))
    for embed in meta.get("embeds") or []:
        adapted = _adapt_embed(embed)
        if adapted is not None:
            chain.append(adapted)

    author = meta.get("author") or {}
    member = meta.get("member") or {}
    return CanonicalMessage(
        chain=chain,
        message_id=str(meta.get("id", "")),
        channel_id=str(meta.get("channel_id", "")),
        guild_id=str(meta.get("guild_id") or ""),
        user_id=str(author.get("id", "")),
        username=member.get("nick") or author.get("global_name") or author.get("username", ""),
        user_avatar=_avatar_url(author),
        timestamp=_timestamp(meta.get("timestamp")),
    )


async def attach_quote(msg: CanonicalMessage, meta: dict, fetch_message: MessageFetcher) -> None:
    """Resolve ``message_reference`` into ``msg.quote``.

    The quote keeps the ids from the reference itself, not from whatever the
    fetched message reports.
    """
    ref = meta.get("message_reference") or {}
    message_id = ref.get("message_id")
    if not message_id:
        return
    channel_id = str(ref.get("channel_id") or meta.get("channel_id", ""))
    fetched = adapt_message(await fetch_message(channel_id, str(message_id)))
    fetched.message_id = str(message_id)
    fetched.channel_id = channel_id
    msg.quote = MessageRef(channel_id=channel_id, message_id=str(message_id), message=fetched)


async def adapt_event(
    payload: dict,
    instance_id: str,
    self_id: str,
    fetch_message: MessageFetcher,
) -> InboundEvent | None:
    """Turn a gateway dispatch payload into an ``InboundEvent``.

    Returns ``None`` for events that are not messages, for empty messages,
    and for messages the bot sent itself.
    """
    event_type = _EVENT_TYPES.get(payload.get("t"))
    meta = payload.get("d") or {}
    if event_type is None:
        return None

    channel = {
        "server_id": str(meta.get("guild_id") or ""),
        "channel_id": str(meta.get("channel_id", "")),
    }

    if event_type == "message-deleted":
        return InboundEvent(
            type=event_type,
            platform="discord",
            instance_id=instance_id,
            channel=channel,
            message_id=str(meta.get("id", "")),
        )

    msg = adapt_message(meta)
    if msg.is_empty():
        return None
    if self_id and msg.user_id == self_id:
        return None

    await attach_quote(msg, meta, fetch_message)
    return InboundEvent(
        type=event_type,
        platform="discord",
        instance_id=instance_id,
        channel=channel,
        message=msg,
        message_id=msg.message_id,
    )
