"""Config file I/O for JSON, YAML and TOML.

The format always follows the file extension:
  .json        → JSON
  .yaml / .yml → YAML  (pyyaml)
  .toml        → TOML  (read: stdlib tomllib; write: tomli-w)

``BRIDGE_CONFIG`` may point at an explicit file; otherwise the data
directory is searched for ``config.json`` / ``.yaml`` / ``.yml`` / ``.toml``.
"""
from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

import tomli_w
import yaml

import services.util as u

_CONFIG_NAMES = ["config.json", "config.yaml", "config.yml", "config.toml"]


def _kind(path: Path) -> str:
    ext = path.suffix.lower()
    if ext in (".yaml", ".yml"):
        return "yaml"
    if ext == ".toml":
        return "toml"
    return "json"


def find_config(directory: Path) -> Path | None:
    """Return the explicit ``BRIDGE_CONFIG`` file or the first config in *directory*."""
    explicit = u.get_env("BRIDGE_CONFIG")
    if explicit:
        p = Path(explicit)
        return p if p.is_file() else None
    for name in _CONFIG_NAMES:
        p = directory / name
        if p.is_file():
            return p
    return None


def load_config(path: Path) -> dict[str, Any]:
    kind = _kind(path)
    if kind == "toml":
        with open(path, "rb") as f:
            return tomllib.load(f)
    with open(path, "r", encoding="utf-8") as f:
        if kind == "yaml":
            return yaml.safe_load(f) or {}
        return json.load(f)


def save_config(data: dict[str, Any], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    kind = _kind(path)
    if kind == "toml":
        with open(path, "wb") as f:
            tomli_w.dump(data, f)
        return
    with open(path, "w", encoding="utf-8") as f:
        if kind == "yaml":
            yaml.dump(data, f, allow_unicode=True, sort_keys=False, default_flow_style=False)
        else:
            json.dump(data, f, ensure_ascii=False, indent=2)
