import os
import sys
from pathlib import Path

# no debug log files while testing
os.environ.setdefault("BRIDGE_LOG_PATH", "")

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
GIF = b"GIF89a" + b"\x00" * 32


class FakeDiscord:
    """Stand-in for the Discord REST API plus a static asset host."""

    def __init__(self):
        self.calls: list[tuple[str, str, object]] = []
        self.messages: dict[tuple[str, str], dict] = {}
        self.members: list[dict] = []
        self.assets: dict[str, tuple[str, bytes]] = {}
        self.head_status: dict[str, int] = {}
        self.fail: set[str] = set()
        self._next_id = 100

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/assets/{name}", self._asset)
        app.router.add_route("*", "/api/{tail:.*}", self._api)
        return app

    async def _asset(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.calls.append((request.method, request.path, None))
        if name not in self.assets:
            return web.Response(status=404)
        content_type, data = self.assets[name]
        if request.method == "HEAD":
            status = self.head_status.get(name, 200)
            return web.Response(status=status, headers={"Content-Type": content_type})
        return web.Response(body=data, headers={"Content-Type": content_type})

    async def _read_body(self, request: web.Request):
        if not request.can_read_body:
            return None
        if request.content_type.startswith("multipart/"):
            parts = {}
            reader = await request.multipart()
            while (part := await reader.next()) is not None:
                parts[part.name] = {
                    "filename": part.filename,
                    "content_type": part.headers.get("Content-Type"),
                    "data": await part.read(),
                }
            return parts
        return await request.json()

    async def _api(self, request: web.Request) -> web.Response:
        path = "/" + request.match_info["tail"]
        body = await self._read_body(request)
        self.calls.append((request.method, request.path_qs, body))

        if path in self.fail:
            return web.json_response({"message": "boom"}, status=500)

        parts = path.strip("/").split("/")
        if request.method == "POST" and (path.endswith("/messages") or parts[0] == "webhooks"):
            self._next_id += 1
            return web.json_response({"id": str(self._next_id)})
        if request.method == "GET" and parts[0] == "channels" and len(parts) == 4:
            msg = self.messages.get((parts[1], parts[3]))
            if msg is None:
                return web.json_response({"message": "Unknown Message"}, status=404)
            return web.json_response(msg)
        if request.method == "GET" and parts[0] == "guilds" and parts[-1] == "members":
            limit = int(request.query.get("limit", "1000"))
            after = int(request.query.get("after", "0"))
            page = [m for m in self.members if int(m["user"]["id"]) > after][:limit]
            return web.json_response(page)
        if request.method == "DELETE":
            return web.Response(status=204)
        return web.json_response({"id": parts[-1]})

    def requests_to(self, prefix: str) -> list[tuple[str, str, object]]:
        return [c for c in self.calls if c[1].startswith(prefix)]


@pytest.fixture
def fake_discord() -> FakeDiscord:
    return FakeDiscord()


@pytest_asyncio.fixture
async def discord_server(fake_discord):
    server = TestServer(fake_discord.app())
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s
