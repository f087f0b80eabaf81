# Canonical message model shared by every driver.
#
# A message is an ordered chain of typed segments.  Drivers translate their
# wire format into this model on receive, and back out of it on send.

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from services.error import InvalidMessageError

TEXT = "text"
MENTION_USER = "mention_user"
MENTION_ALL = "mention_all"
MENTION_HERE = "mention_here"
CHANNEL_REF = "channel_ref"
EMOJI = "emoji"
IMAGE = "image"
VIDEO = "video"
LINK_CARD = "link_card"
QUOTE = "quote"

KINDS = frozenset({
    TEXT, MENTION_USER, MENTION_ALL, MENTION_HERE, CHANNEL_REF,
    EMOJI, IMAGE, VIDEO, LINK_CARD, QUOTE,
})

ASSET_KINDS = frozenset({IMAGE, VIDEO})


@dataclass(frozen=True)
class Segment:
    kind: str
    attrs: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in KINDS:
            raise InvalidMessageError(f"unknown segment kind: {self.kind!r}")
        # drop unset attributes so equality ignores them
        clean = {k: v for k, v in dict(self.attrs).items() if v is not None}
        object.__setattr__(self, "attrs", MappingProxyType(clean))

    def get(self, key: str, default=None):
        return self.attrs.get(key, default)

    def __eq__(self, other):
        if not isinstance(other, Segment):
            return NotImplemented
        return self.kind == other.kind and dict(self.attrs) == dict(other.attrs)

    def __hash__(self):
        return hash((self.kind, tuple(sorted(self.attrs.items()))))

    def __repr__(self):
        inner = ", ".join(f"{k}={v!r}" for k, v in self.attrs.items())
        return f"{self.kind}({inner})"


# ----------------------------------------------------------------------
# Constructors
# ----------------------------------------------------------------------

def text(content: str) -> Segment:
    return Segment(TEXT, {"content": content})


def mention_user(user_id: str) -> Segment:
    return Segment(MENTION_USER, {"id": str(user_id)})


def mention_all() -> Segment:
    return Segment(MENTION_ALL)


def mention_here() -> Segment:
    return Segment(MENTION_HERE)


def channel_ref(channel_id: str) -> Segment:
    return Segment(CHANNEL_REF, {"id": str(channel_id)})


def emoji(name: str | None, emoji_id: str | None, animated: bool = False) -> Segment:
    return Segment(EMOJI, {"name": name, "id": emoji_id, "animated": animated or None})


def image(url: str, proxy_url: str | None = None, mode: str | None = None) -> Segment:
    return Segment(IMAGE, {"url": url, "proxy_url": proxy_url, "mode": mode})


def video(url: str, proxy_url: str | None = None, mode: str | None = None) -> Segment:
    return Segment(VIDEO, {"url": url, "proxy_url": proxy_url, "mode": mode})


def link_card(url: str | None, title: str | None = None, description: str | None = None) -> Segment:
    return Segment(LINK_CARD, {"url": url, "title": title, "description": description})


def quote(message_id: str, channel_id: str | None = None) -> Segment:
    return Segment(QUOTE, {"id": str(message_id), "channel_id": channel_id})


# ----------------------------------------------------------------------
# Messages
# ----------------------------------------------------------------------

@dataclass
class MessageRef:
    """Weak reference to a message on its origin platform.

    ``message`` stays ``None`` until someone fetches the referenced content.
    """
    channel_id: str
    message_id: str
    message: CanonicalMessage | None = None


@dataclass
class CanonicalMessage:
    """Platform-neutral message exchanged between drivers and the bridge."""
    chain: list[Segment] = field(default_factory=list)
    quote: MessageRef | None = None
    addition: dict = field(default_factory=dict)  # platform passthrough fields
    message_id: str = ""
    channel_id: str = ""
    guild_id: str = ""
    user_id: str = ""
    username: str = ""
    user_avatar: str = ""
    timestamp: int = 0  # epoch milliseconds

    def is_empty(self) -> bool:
        return not any(
            seg.kind != TEXT or seg.get("content", "").strip()
            for seg in self.chain
        )

    def plain_text(self) -> str:
        """Readable single-line rendering, used for logs and templates."""
        parts: list[str] = []
        for seg in self.chain:
            if seg.kind == TEXT:
                parts.append(seg.get("content", ""))
            elif seg.kind == MENTION_USER:
                parts.append(f"@{seg.get('id')}")
            elif seg.kind == MENTION_ALL:
                parts.append("@all")
            elif seg.kind == MENTION_HERE:
                parts.append("@here")
            elif seg.kind == CHANNEL_REF:
                parts.append(f"#{seg.get('id')}")
            elif seg.kind == EMOJI:
                parts.append(f":{seg.get('name', '')}:")
            elif seg.kind in ASSET_KINDS:
                parts.append(f"[{seg.kind.capitalize()}]")
            elif seg.kind == LINK_CARD:
                parts.append(seg.get("url") or seg.get("title") or "")
        return "".join(parts)


@dataclass
class SendResult:
    """Ids of every wire call issued for one message, in send order."""
    message_ids: list[str] = field(default_factory=list)

    @property
    def last_message_id(self) -> str:
        return self.message_ids[-1] if self.message_ids else "0"


@dataclass
class InboundEvent:
    """A normalized platform event handed to the bridge."""
    type: str  # "message" | "message-updated" | "message-deleted"
    platform: str
    instance_id: str
    channel: dict
    message: CanonicalMessage | None = None
    message_id: str = ""
