import json

import pytest

from services import segment as seg
from services.bridge import Bridge
from services.segment import CanonicalMessage, InboundEvent, MessageRef
from services.stats import StatsRegistry


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Sink:
    def __init__(self):
        self.sent = []

    async def __call__(self, channel, message, **kwargs):
        self.sent.append((channel, message, kwargs))


def _event(text="hello", type="message", channel=None):
    return InboundEvent(
        type=type,
        platform="discord",
        instance_id="dc",
        channel=channel or {"server_id": "1", "channel_id": "7"},
        message=CanonicalMessage(
            chain=[seg.mention_user("42"), seg.text(f" {text}")],
            quote=MessageRef("7", "1"),
            username="alice",
            user_id="42",
        ),
        message_id="9",
    )


FORWARD = {
    "from": {"dc": {"channel_id": "7"}},
    "to": {"fs": {"chat_id": "oc_1"}},
    "msg": {"msg_format": "[{username}] {msg} ({platform})", "webhook_title": "{username}"},
}


@pytest.mark.asyncio
async def test_forward_rule_wraps_chain_with_template():
    bridge = Bridge()
    sink = Sink()
    bridge.register_sender("fs", sink)
    bridge.set_rules([FORWARD])

    await bridge.on_event(_event())

    channel, message, kwargs = sink.sent[0]
    assert channel == {"chat_id": "oc_1"}
    assert message.chain == [
        seg.text("[alice] "), seg.mention_user("42"), seg.text(" hello"), seg.text(" (discord)"),
    ]
    assert message.quote is None
    assert kwargs == {"webhook_title": "alice"}


@pytest.mark.asyncio
async def test_edits_follow_forward_edits_flag():
    bridge = Bridge()
    sink = Sink()
    bridge.register_sender("fs", sink)
    bridge.set_rules([FORWARD])

    await bridge.on_event(_event(type="message-updated"))
    assert sink.sent == []

    bridge.set_rules([{**FORWARD, "forward_edits": True}])
    await bridge.on_event(_event(type="message-updated"))
    assert len(sink.sent) == 1


@pytest.mark.asyncio
async def test_connect_rule_skips_source_channel():
    bridge = Bridge()
    dc_sink, fs_sink = Sink(), Sink()
    bridge.register_sender("dc", dc_sink)
    bridge.register_sender("fs", fs_sink)
    bridge.set_rules([{
        "type": "connect",
        "channels": {
            "dc": {"server_id": "1", "channel_id": "7"},
            "fs": {"chat_id": "oc_1", "msg": {"msg_format": "{username}: {msg}"}},
        },
    }])

    await bridge.on_event(_event())

    assert dc_sink.sent == []
    assert fs_sink.sent[0][1].chain[0] == seg.text("alice: ")


@pytest.mark.asyncio
async def test_sensitive_values_are_blocked():
    bridge = Bridge()
    sink = Sink()
    bridge.register_sender("fs", sink)
    bridge.set_rules([FORWARD])
    bridge.load_sensitive_values({"discord": {"dc": {"bot_token": "super-secret-token"}}})

    await bridge.on_event(_event("leak super-secret-token"))

    assert sink.sent == []


@pytest.mark.asyncio
async def test_sender_failure_does_not_stop_routing():
    bridge = Bridge()
    sink = Sink()

    async def broken(channel, message, **kwargs):
        raise RuntimeError("down")

    bridge.register_sender("bad", broken)
    bridge.register_sender("fs", sink)
    bridge.set_rules([{**FORWARD, "to": {"bad": {}, "fs": {"chat_id": "oc_1"}}}])

    await bridge.on_event(_event())

    assert len(sink.sent) == 1
    assert bridge.stats.sent("fs").get() == 1
    assert bridge.stats.sent("bad").get() == 0


@pytest.mark.asyncio
async def test_stats_and_status_string():
    clock = Clock()
    bridge = Bridge(StatsRegistry(clock))
    bridge.register_sender("fs", Sink())
    bridge.set_rules([FORWARD])

    await bridge.on_event(_event())
    await bridge.on_event(_event(type="message-deleted"))

    assert bridge.status("dc") == "dc: sent 0/min, received 2/min"
    assert bridge.status("fs") == "fs: sent 1/min, received 0/min"

    clock.now += 61
    assert bridge.status("dc") == "dc: sent 0/min, received 0/min"


def test_render_falls_back_to_template():
    assert Bridge.render("{missing}", {}) == "{missing}"


def test_load_rules_from_file(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"rules": [FORWARD]}), encoding="utf-8")
    bridge = Bridge()
    bridge.load_rules(path)
    assert bridge._rules == [FORWARD]
