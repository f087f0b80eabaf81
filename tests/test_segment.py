import pytest

from services import segment as seg
from services.error import InvalidMessageError
from services.segment import CanonicalMessage, SendResult


def test_unknown_kind_is_rejected():
    with pytest.raises(InvalidMessageError):
        seg.Segment("sticker", {"id": "1"})


def test_segments_are_immutable_and_compare_by_value():
    a = seg.image("https://x/a.png", proxy_url="https://p/a.png")
    b = seg.image("https://x/a.png", proxy_url="https://p/a.png")
    assert a == b
    assert hash(a) == hash(b)
    with pytest.raises(TypeError):
        a.attrs["url"] = "https://evil"


def test_unset_attributes_are_dropped():
    assert dict(seg.image("u").attrs) == {"url": "u"}
    assert dict(seg.emoji("wave", "9").attrs) == {"name": "wave", "id": "9"}
    assert seg.emoji("wave", "9", animated=True).get("animated") is True


def test_is_empty_ignores_whitespace_text_only():
    assert CanonicalMessage(chain=[seg.text("  \n")]).is_empty()
    assert not CanonicalMessage(chain=[seg.text(" "), seg.mention_here()]).is_empty()


def test_plain_text_rendering():
    msg = CanonicalMessage(chain=[
        seg.mention_user("42"), seg.text(" see "), seg.channel_ref("7"), seg.image("u"),
    ])
    assert msg.plain_text() == "@42 see #7[Image]"


def test_send_result_keeps_every_id_in_order():
    result = SendResult(["1", "2", "3"])
    assert result.last_message_id == "3"
    assert SendResult().last_message_id == "0"
