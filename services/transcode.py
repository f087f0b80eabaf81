# Outbound transcoding turns a segment chain into an ordered list of wire
# calls.  Drivers supply the inline renderer for their markup dialect and
# then execute the planned calls one by one, in order.
#
# Inline-renderable segments are buffered into a single content string.  Any
# other segment flushes that buffer first and then gets a call of its own, so
# the user-visible order of text and attachments is never changed.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Union

import services.logger as log
from services.segment import ASSET_KINDS, LINK_CARD, QUOTE, MessageRef, Segment

l = log.get_logger()

InlineRenderer = Callable[[Segment], "str | None"]


@dataclass
class ContentCall:
    content: str
    addition: dict = field(default_factory=dict)


@dataclass
class AssetCall:
    segment: Segment
    addition: dict = field(default_factory=dict)


@dataclass
class EmbedCall:
    segment: Segment
    addition: dict = field(default_factory=dict)


WireCall = Union[ContentCall, AssetCall, EmbedCall]


def split_quote(chain: list[Segment]) -> tuple[MessageRef | None, list[Segment]]:
    """Pull a leading ``quote`` segment off *chain*.

    Returns ``(ref, rest)``; the input list is not modified.
    """
    if chain and chain[0].kind == QUOTE:
        head = chain[0]
        ref = MessageRef(channel_id=head.get("channel_id", ""), message_id=head.get("id", ""))
        return ref, list(chain[1:])
    return None, list(chain)


def plan(
    chain: list[Segment],
    render_inline: InlineRenderer,
    addition: dict | None = None,
    reply: dict | None = None,
) -> list[WireCall]:
    """Plan the wire calls needed to deliver *chain*.

    *reply* holds the platform's reply-reference fields; they are merged into
    the addition of the first call only.
    """
    base = {k: v for k, v in (addition or {}).items() if k != "content"}
    calls: list[WireCall] = []
    buffer = ""

    def next_addition() -> dict:
        if reply and not calls:
            return {**base, **reply}
        return dict(base)

    def flush():
        nonlocal buffer
        if buffer.strip():
            calls.append(ContentCall(buffer, next_addition()))
        buffer = ""

    for seg in chain:
        markup = render_inline(seg)
        if markup is not None:
            buffer += markup
            continue
        if seg.kind == QUOTE:
            # only a leading quote means "reply to"; split_quote handles that one
            continue
        flush()
        if seg.kind in ASSET_KINDS:
            calls.append(AssetCall(seg, next_addition()))
        elif seg.kind == LINK_CARD:
            calls.append(EmbedCall(seg, next_addition()))
        else:
            l.debug(f"transcode: dropping segment that cannot be rendered: {seg!r}")

    flush()
    return calls


def count_kind(chain: list[Segment], kind: str) -> int:
    return sum(1 for seg in chain if seg.kind == kind)
