from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator


# ---------------------------------------------------------------------------
# Reusable bool coercion: "true" / "1" / "yes" → True
# ---------------------------------------------------------------------------

def _coerce_bool(v: object) -> object:
    if isinstance(v, str):
        return v.lower() in ("true", "1", "yes")
    return v


CoercedBool = Annotated[bool, BeforeValidator(_coerce_bool)]

AssetMode = Literal["auto", "download", "direct"]


# ---------------------------------------------------------------------------
# Base for all driver config blocks; unknown keys are a validation error
# ---------------------------------------------------------------------------

class _DriverConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Per-driver config models
# ---------------------------------------------------------------------------

class DiscordConfig(_DriverConfig):
    send_method:            Literal["webhook", "bot"] = "webhook"
    webhook_url:            str                       = ""
    bot_token:              str                       = ""
    endpoint:               str                       = "https://discord.com/api/v10"
    handle_external_assets: AssetMode                 = "auto"
    max_file_size:          int                       = 8 * 1024 * 1024
    request_timeout:        float                     = 30.0
    quote_cache_ttl:        float                     = 60.0
    webhook_wait:           CoercedBool               = True

    @model_validator(mode="after")
    def _require_target(self) -> DiscordConfig:
        if self.send_method == "webhook" and not self.webhook_url and not self.bot_token:
            raise ValueError("requires 'webhook_url' or 'bot_token'")
        if self.send_method == "bot" and not self.bot_token:
            raise ValueError("send_method 'bot' requires 'bot_token'")
        return self


class FeishuConfig(_DriverConfig):
    app_id:                 str
    app_secret:             str
    encrypt_key:            str       = ""
    listen_port:            int       = 8080
    listen_path:            str       = "/feishu"
    handle_external_assets: AssetMode = "download"
    max_file_size:          int       = 10 * 1024 * 1024
