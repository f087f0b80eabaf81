# Thin async wrapper over the Discord REST API.
#
# Every request carries the bot token.  Any network failure or non-2xx
# response becomes a TransportError naming the URL, the payload and the bot,
# and is never retried here.

from __future__ import annotations

import asyncio
from typing import Any, Callable

import aiohttp

import services.logger as log
from services.error import TransportError
from services.util import ExpiringStore
from drivers.discord.paginate import PAGE_SIZE, fetch_filtered

l = log.get_logger()


class DiscordApi:

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str = "",
        endpoint: str = "https://discord.com/api/v10",
        timeout: float = 30.0,
        quote_cache_ttl: float = 60.0,
    ):
        self.session = session
        self.token = token
        self.endpoint = endpoint.rstrip("/")
        self.self_id = ""
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._messages = ExpiringStore(quote_cache_ttl)

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        data: aiohttp.FormData | None = None,
    ) -> Any:
        url = f"{self.endpoint}{path}"
        headers = {"Authorization": f"Bot {self.token}"} if self.token else {}
        try:
            async with self.session.request(
                method, url, json=json, data=data, headers=headers, timeout=self._timeout,
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    l.error(f"Discord {method} {path} failed HTTP {resp.status}: {body[:200]}")
                    raise TransportError(url, json if data is None else "<multipart>", self.self_id, resp.status)
                if resp.status == 204:
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            l.error(f"Discord {method} {path} failed: {e}")
            raise TransportError(url, json if data is None else "<multipart>", self.self_id) from e

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_self(self) -> dict:
        data = await self.request("GET", "/users/@me")
        self.self_id = str(data.get("id", ""))
        return data

    def get_user(self, user_id: str):
        return self.request("GET", f"/users/{user_id}")

    def get_user_guilds(self):
        return self.request("GET", "/users/@me/guilds")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(self, channel_id: str, body: dict | None = None, form: aiohttp.FormData | None = None):
        return self.request("POST", f"/channels/{channel_id}/messages", json=body, data=form)

    def execute_webhook(
        self,
        webhook_id: str,
        token: str,
        body: dict | None = None,
        form: aiohttp.FormData | None = None,
        wait: bool = True,
    ):
        wait_q = "true" if wait else "false"
        return self.request("POST", f"/webhooks/{webhook_id}/{token}?wait={wait_q}", json=body, data=form)

    def edit_message(self, channel_id: str, message_id: str, body: dict):
        return self.request("PATCH", f"/channels/{channel_id}/messages/{message_id}", json=body)

    async def delete_message(self, channel_id: str, message_id: str):
        await self.request("DELETE", f"/channels/{channel_id}/messages/{message_id}")
        self._messages.pop((channel_id, message_id))

    async def get_message(self, channel_id: str, message_id: str) -> dict:
        key = (channel_id, message_id)
        cached = self._messages.get(key)
        if cached is not None:
            return cached
        data = await self.request("GET", f"/channels/{channel_id}/messages/{message_id}")
        self._messages.set(key, data)
        return data

    # ------------------------------------------------------------------
    # Guilds and members
    # ------------------------------------------------------------------

    def get_guild(self, guild_id: str):
        return self.request("GET", f"/guilds/{guild_id}")

    def modify_guild(self, guild_id: str, data: dict):
        return self.request("PATCH", f"/guilds/{guild_id}", json=data)

    def get_guild_channels(self, guild_id: str):
        return self.request("GET", f"/guilds/{guild_id}/channels")

    def list_guild_members(self, guild_id: str, limit: int = PAGE_SIZE, after: str = "0"):
        return self.request("GET", f"/guilds/{guild_id}/members?limit={limit}&after={after}")

    def get_guild_member(self, guild_id: str, user_id: str):
        return self.request("GET", f"/guilds/{guild_id}/members/{user_id}")

    def modify_guild_member(self, guild_id: str, user_id: str, data: dict):
        return self.request("PATCH", f"/guilds/{guild_id}/members/{user_id}", json=data)

    def add_guild_member_role(self, guild_id: str, user_id: str, role_id: str):
        return self.request("PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}")

    def remove_guild_member_role(self, guild_id: str, user_id: str, role_id: str):
        return self.request("DELETE", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}")

    async def fetch_members(self, guild_id: str, predicate: Callable[[dict], bool]) -> list[dict]:
        async def page(limit: int, after: str) -> list[dict]:
            return await self.list_guild_members(guild_id, limit, after) or []
        return await fetch_filtered(page, predicate)

    def get_role_members(self, guild_id: str, role_id: str):
        role_id = str(role_id)
        return self.fetch_members(guild_id, lambda m: role_id in m.get("roles", []))

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_guild_roles(self, guild_id: str):
        return self.request("GET", f"/guilds/{guild_id}/roles")

    def create_guild_role(self, guild_id: str, data: dict):
        return self.request("POST", f"/guilds/{guild_id}/roles", json=data)

    def modify_guild_role(self, guild_id: str, role_id: str, data: dict):
        return self.request("PATCH", f"/guilds/{guild_id}/roles/{role_id}", json=data)

    # ------------------------------------------------------------------
    # Channels and webhooks
    # ------------------------------------------------------------------

    def get_channel(self, channel_id: str):
        return self.request("GET", f"/channels/{channel_id}")

    def modify_channel(self, channel_id: str, data: dict):
        return self.request("PATCH", f"/channels/{channel_id}", json=data)

    def create_webhook(self, channel_id: str, name: str, avatar: str | None = None):
        body = {"name": name}
        if avatar:
            body["avatar"] = avatar
        return self.request("POST", f"/channels/{channel_id}/webhooks", json=body)

    def modify_webhook(self, webhook_id: str, data: dict):
        return self.request("PATCH", f"/webhooks/{webhook_id}", json=data)

    def get_channel_webhooks(self, channel_id: str):
        return self.request("GET", f"/channels/{channel_id}/webhooks")

    def get_guild_webhooks(self, guild_id: str):
        return self.request("GET", f"/guilds/{guild_id}/webhooks")
