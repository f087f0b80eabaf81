# services/util.py

import os
import time
from typing import Callable


def get_data_path():
    path = get_env('BRIDGE_DATA_PATH')
    return path.strip() if path else 'data'


def get_env(env: str):
    return os.environ.get(env)


class ExpiringStore:
    """Mapping whose entries expire *ttl* seconds after they were set.

    Expiry is checked lazily on lookup; ``sweep()`` drops every stale entry
    at once for callers that want to bound memory.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._data: dict = {}

    def set(self, key, value, ttl: float | None = None) -> None:
        self._data[key] = (value, self._clock() + (self.ttl if ttl is None else ttl))

    def get(self, key, default=None):
        entry = self._data.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return default
        return value

    def pop(self, key, default=None):
        value = self.get(key, default)
        self._data.pop(key, None)
        return value

    def sweep(self) -> int:
        now = self._clock()
        stale = [k for k, (_, exp) in self._data.items() if now >= exp]
        for k in stale:
            del self._data[k]
        return len(stale)

    def __contains__(self, key) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def __len__(self) -> int:
        return len(self._data)
