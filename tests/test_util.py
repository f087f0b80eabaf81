import pytest

import services.config_io as config_io
from services.config_schema import DiscordConfig, FeishuConfig
from services.stats import TickCounter
from services.util import ExpiringStore


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_expiring_store_checks_expiry_on_lookup():
    clock = Clock()
    store = ExpiringStore(ttl=10, clock=clock)
    store.set("a", 1)
    store.set("b", 2, ttl=30)

    clock.now = 9.9
    assert store.get("a") == 1

    clock.now = 10
    assert store.get("a") is None
    assert "a" not in store
    assert "b" in store


def test_expiring_store_sweep():
    clock = Clock()
    store = ExpiringStore(ttl=5, clock=clock)
    for key in "abc":
        store.set(key, key)
    store.set("d", "d", ttl=50)

    clock.now = 6
    assert store.sweep() == 3
    assert len(store) == 1


def test_tick_counter_window_slides():
    clock = Clock()
    counter = TickCounter(clock)
    counter.add()
    clock.now = 30
    counter.add(2)
    assert counter.get() == 3

    clock.now = 60
    assert counter.get() == 2

    clock.now = 200
    assert counter.get() == 0


def test_discord_config_requires_a_target():
    with pytest.raises(ValueError):
        DiscordConfig(send_method="bot")
    with pytest.raises(ValueError):
        DiscordConfig(webhook_url="https://x", unknown_key=1)
    cfg = DiscordConfig(webhook_url="https://discord.com/api/webhooks/1/t", webhook_wait="no")
    assert cfg.handle_external_assets == "auto"
    assert cfg.webhook_wait is False


def test_feishu_config_defaults():
    cfg = FeishuConfig(app_id="cli_x", app_secret="s")
    assert cfg.encrypt_key == ""
    assert cfg.listen_path == "/feishu"


@pytest.mark.parametrize("name", ["config.json", "config.yaml", "config.toml"])
def test_config_io_round_trip(tmp_path, monkeypatch, name):
    monkeypatch.delenv("BRIDGE_CONFIG", raising=False)
    data = {"discord": {"main": {"webhook_url": "https://discord.com/api/webhooks/1/t"}}}
    path = tmp_path / name
    config_io.save_config(data, path)

    assert config_io.find_config(tmp_path) == path
    assert config_io.load_config(path) == data
