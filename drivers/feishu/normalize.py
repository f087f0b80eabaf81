# Feishu im.message.receive_v1 → canonical message.
#
# https://open.feishu.cn/document/uAjLw4CM/ukTMukTMukTM/reference/im-v1/message/events/receive
#
# Only text messages are bridged.  Mentions arrive as placeholders
# ("@_user_1") in the text with their targets listed under "mentions".

from __future__ import annotations

import json
import re

import services.logger as log
from services import segment as seg
from services.segment import CanonicalMessage, InboundEvent, MessageRef, Segment

l = log.get_logger()

RECEIVE_EVENT = "im.message.receive_v1"

_PLACEHOLDER_RE = re.compile(r"@_user_\d+|@_all")


def parse_text(text: str, mentions: list[dict]) -> list[Segment]:
    targets = {}
    for mention in mentions or []:
        open_id = (mention.get("id") or {}).get("open_id")
        if mention.get("key") and open_id:
            targets[mention["key"]] = open_id

    chain: list[Segment] = []
    pos = 0
    for m in _PLACEHOLDER_RE.finditer(text):
        key = m.group(0)
        if key != "@_all" and key not in targets:
            continue
        if m.start() > pos:
            chain.append(seg.text(text[pos:m.start()]))
        pos = m.end()
        chain.append(seg.mention_all() if key == "@_all" else seg.mention_user(targets[key]))
    if pos < len(text):
        chain.append(seg.text(text[pos:]))
    return chain


def adapt_event(body: dict, instance_id: str) -> InboundEvent | None:
    event = body.get("event") or {}
    message = event.get("message") or {}
    sender = event.get("sender") or {}

    if sender.get("sender_type") == "app":
        return None
    if message.get("message_type") != "text":
        l.debug(f"Feishu [{instance_id}] skipping {message.get('message_type')!r} message")
        return None

    try:
        text = json.loads(message.get("content") or "{}").get("text", "")
    except ValueError:
        l.warning(f"Feishu [{instance_id}] message content is not JSON: {message.get('content')!r}")
        return None

    chat_id = message.get("chat_id", "")
    open_id = (sender.get("sender_id") or {}).get("open_id", "")
    msg = CanonicalMessage(
        chain=parse_text(text, message.get("mentions")),
        message_id=message.get("message_id", ""),
        channel_id=chat_id,
        user_id=open_id,
        username=open_id,  # display name needs a separate user-info call
        timestamp=int(message.get("create_time") or 0),
    )
    if msg.is_empty():
        return None

    parent_id = message.get("parent_id")
    if parent_id:
        msg.quote = MessageRef(channel_id=chat_id, message_id=parent_id)

    return InboundEvent(
        type="message",
        platform="feishu",
        instance_id=instance_id,
        channel={"chat_id": chat_id},
        message=msg,
        message_id=msg.message_id,
    )
