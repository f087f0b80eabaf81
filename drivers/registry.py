"""
Driver registry.

Each driver package calls ``register()`` when it is imported.  ``main.py``
discovers every module under ``drivers/`` with ``pkgutil.iter_modules`` and
imports it, so adding a platform never means editing a central list.
"""

from __future__ import annotations

_REGISTRY: dict[str, tuple[type, type]] = {}


def register(name: str, config_cls: type, driver_cls: type) -> None:
    """Register a driver under *name*, the platform key used in the config file."""
    if name in _REGISTRY and _REGISTRY[name] != (config_cls, driver_cls):
        raise ValueError(f"driver {name!r} registered twice")
    _REGISTRY[name] = (config_cls, driver_cls)


def all_drivers() -> dict[str, tuple[type, type]]:
    """Snapshot of ``{name: (config_cls, driver_cls)}``."""
    return dict(_REGISTRY)
