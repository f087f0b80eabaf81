"""Cursor pagination over large guild collections.

Pages are requested one after another because each cursor is the id of the
last member on the previous page.  The filter runs once the whole collection
has been read; member counts are bounded in practice, so holding them all in
memory is acceptable.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import services.logger as log

l = log.get_logger()

PAGE_SIZE = 1000
START = "0"

PageFetcher = Callable[[int, str], Awaitable[list[dict]]]


def _member_id(member: dict) -> str:
    user = member.get("user") or {}
    return str(user.get("id") or member.get("id", ""))


async def fetch_all(fetch_page: PageFetcher, limit: int = PAGE_SIZE) -> list[dict]:
    members: list[dict] = []
    after = START
    while True:
        page = await fetch_page(limit, after)
        members.extend(page)
        if len(page) < limit:
            break
        after = _member_id(page[-1])
    l.debug(f"paginate: fetched {len(members)} member(s)")
    return members


async def fetch_filtered(
    fetch_page: PageFetcher,
    predicate: Callable[[dict], bool],
    limit: int = PAGE_SIZE,
) -> list[dict]:
    return [m for m in await fetch_all(fetch_page, limit) if predicate(m)]
