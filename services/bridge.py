import json
from dataclasses import replace
from pathlib import Path
from typing import Callable

import services.util as u
import services.logger as log
from services import segment as seg
from services.segment import CanonicalMessage, InboundEvent
from services.stats import StatsRegistry

l = log.get_logger()

# Config keys whose values are treated as credentials and must never appear in
# outgoing messages.  Matched as substrings against lower-cased key names.
_SENSITIVE_KEY_PATTERNS = ("token", "secret", "password", "webhook_url", "encrypt_key")

_STATUS_FORMAT = "{instance}: sent {sent}/min, received {received}/min"


def _collect_sensitive(obj, found: set[str]) -> None:
    """Recursively extract sensitive string values from the config dict."""
    if isinstance(obj, dict):
        for k, v in obj.items():
            if isinstance(v, str) and v and any(p in k.lower() for p in _SENSITIVE_KEY_PATTERNS):
                found.add(v)
            else:
                _collect_sensitive(v, found)
    elif isinstance(obj, list):
        for item in obj:
            _collect_sensitive(item, found)


class Bridge:
    """
    Core routing engine.

    Drivers register a sender callback via ``register_sender``.
    When a driver receives an event it calls ``on_event``; the bridge
    matches it against every rule and calls the appropriate sender(s).
    """

    def __init__(self, stats: StatsRegistry | None = None):
        self.stats = stats or StatsRegistry()
        self._rules: list[dict] = []
        self._senders: dict[str, Callable] = {}
        self._sensitive: frozenset[str] = frozenset()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def load_rules(self, path: Path | None = None):
        rules_path = path or Path(u.get_data_path()) / "rules.json"
        with open(rules_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        self.set_rules(data.get("rules", []))

    def set_rules(self, rules: list[dict]):
        self._rules = list(rules)
        l.info(f"Loaded {len(self._rules)} bridge rule(s)")

    def load_sensitive_values(self, config: dict):
        found: set[str] = set()
        _collect_sensitive(config, found)
        self._sensitive = frozenset(found)
        log.register_sensitive(self._sensitive)
        l.info(f"Loaded {len(self._sensitive)} sensitive value(s) for leak detection")

    def register_sender(self, instance_id: str, send_func: Callable):
        self._senders[instance_id] = send_func
        l.debug(f"Registered sender for instance: {instance_id}")

    # ------------------------------------------------------------------
    # Templates and status
    # ------------------------------------------------------------------

    @staticmethod
    def render(template: str, ctx: dict) -> str:
        try:
            return template.format(**ctx)
        except (KeyError, IndexError, ValueError) as e:
            l.warning(f"template {template!r} could not be rendered ({e}); using it verbatim")
            return template

    def status(self, instance_id: str, template: str = _STATUS_FORMAT) -> str:
        return self.render(template, {
            "instance": instance_id,
            "sent": self.stats.sent(instance_id).get(),
            "received": self.stats.received(instance_id).get(),
        })

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    async def on_event(self, event: InboundEvent):
        self.stats.received(event.instance_id).add()

        if event.type == "message-deleted":
            l.debug(f"[{event.instance_id}] message {event.message_id} deleted; nothing to route")
            return
        if event.message is None:
            return

        edited = event.type == "message-updated"
        for rule in self._rules:
            if edited and not rule.get("forward_edits", False):
                continue
            if rule.get("type") == "connect":
                if self._matches_channel(event, rule.get("channels", {})):
                    await self._dispatch_connect(event, rule)
            else:
                if self._matches_from(event, rule.get("from", {})):
                    await self._dispatch(event, rule)

    def _matches_channel(self, event: InboundEvent, channels: dict) -> bool:
        """Return True if *event* originates from one of the channels in a connect rule."""
        if event.instance_id not in channels:
            return False
        for key, expected in channels[event.instance_id].items():
            if key == "msg":  # reserved, not a channel address field
                continue
            if str(event.channel.get(key, "")) != str(expected):
                return False
        return True

    def _matches_from(self, event: InboundEvent, from_cfg: dict) -> bool:
        """Return True if *event* matches the ``from`` block of a forward rule."""
        if event.instance_id not in from_cfg:
            return False
        for key, expected in from_cfg[event.instance_id].items():
            if str(event.channel.get(key, "")) != str(expected):
                return False
        return True

    def _build_formatted(self, event: InboundEvent, msg_cfg: dict) -> tuple[CanonicalMessage, dict]:
        """Return (outgoing message, extra_kwargs) for a given msg config block.

        ``msg_format`` wraps the chain: ``{msg}`` marks where the original
        segments go, everything around it becomes plain text.
        """
        msg = event.message
        ctx = {
            "platform":    event.platform,
            "from":        event.instance_id,
            "username":    msg.username,
            "user_id":     msg.user_id,
            "user_avatar": msg.user_avatar,
        }
        fmt = msg_cfg.get("msg_format", "{msg}")
        before, marker, after = fmt.partition("{msg}")
        if not marker:
            after = ""

        chain: list[seg.Segment] = []
        if before:
            chain.append(seg.text(self.render(before, ctx)))
        chain.extend(msg.chain)
        if after:
            chain.append(seg.text(self.render(after, ctx)))

        # the quote points at a message on the origin platform only
        outgoing = replace(msg, chain=chain, quote=None, addition={})

        extra: dict = {}
        for k, v in msg_cfg.items():
            if k == "msg_format":
                continue
            extra[k] = self.render(v, ctx) if isinstance(v, str) else v

        return outgoing, extra

    def _is_sensitive(self, msg: CanonicalMessage) -> bool:
        if not self._sensitive:
            return False
        haystack = [msg.plain_text()]
        haystack.extend(str(s.get("url", "")) for s in msg.chain)
        return any(secret in text for text in haystack for secret in self._sensitive)

    async def _send(self, target_id: str, target_channel: dict, outgoing: CanonicalMessage, extra: dict):
        if self._is_sensitive(outgoing):
            l.warning(
                f"Message to '{target_id}' blocked: text contains a sensitive "
                f"value from config (token/secret/webhook). Possible credential leak."
            )
            return

        sender = self._senders.get(target_id)
        if sender is None:
            l.warning(f"No sender registered for instance '{target_id}'")
            return

        try:
            await sender(target_channel, outgoing, **extra)
        except Exception as e:
            l.error(f"Failed to send to '{target_id}': {e}")
            return
        self.stats.sent(target_id).add()

    async def _dispatch(self, event: InboundEvent, rule: dict):
        outgoing, extra = self._build_formatted(event, rule.get("msg", {}))

        for target_id, target_channel in rule.get("to", {}).items():
            # Skip echo back to the exact same channel
            if target_id == event.instance_id and target_channel == event.channel:
                continue
            await self._send(target_id, target_channel, outgoing, extra)

    async def _dispatch_connect(self, event: InboundEvent, rule: dict):
        """Fan-out to every channel in the connect rule except the source."""
        global_msg_cfg = rule.get("msg", {})

        for target_id, target_cfg in rule.get("channels", {}).items():
            target_channel = {k: v for k, v in target_cfg.items() if k != "msg"}

            if target_id == event.instance_id and target_channel == event.channel:
                continue

            # Per-target msg overrides the global msg (target wins on conflict)
            merged_msg_cfg = {**global_msg_cfg, **target_cfg.get("msg", {})}
            outgoing, extra = self._build_formatted(event, merged_msg_cfg)
            await self._send(target_id, target_channel, outgoing, extra)
