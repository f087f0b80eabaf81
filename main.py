import argparse
import asyncio
import importlib
import pkgutil
import sys
from pathlib import Path

from pydantic import ValidationError

import services.error as error
import services.logger as log
import services.util as u
import services.config_io as config_io
from services.bridge import Bridge
from services.stats import StatsRegistry

import drivers as _drivers_pkg

l = log.get_logger()


def _load_all_drivers() -> None:
    """Import every module in the ``drivers/`` package.

    Each driver calls ``drivers.registry.register()`` at import time, so this
    one pass is enough to populate the registry.
    """
    for _, mod_name, _ in pkgutil.iter_modules(_drivers_pkg.__path__):
        if mod_name != "registry":
            importlib.import_module(f"drivers.{mod_name}")


def cmd_convert(src: str, dst: str) -> None:
    src_path = Path(src)
    dst_path = Path(dst)

    if not src_path.is_file():
        print(f"Error: source file not found: {src_path}", file=sys.stderr)
        sys.exit(1)

    try:
        data = config_io.load_config(src_path)
    except Exception as e:
        print(f"Error reading {src_path}: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        config_io.save_config(data, dst_path)
    except Exception as e:
        print(f"Error writing {dst_path}: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Converted {src_path} → {dst_path}")


def build_drivers(raw: dict, bridge: Bridge) -> list | None:
    """Validate each platform block and instantiate its drivers.

    Returns ``None`` when any instance fails validation.
    """
    from drivers.registry import all_drivers

    instances = []
    config_ok = True
    for platform, (config_cls, driver_cls) in all_drivers().items():
        for inst_id, inst_raw in (raw.get(platform) or {}).items():
            try:
                cfg = config_cls.model_validate(inst_raw)
            except ValidationError as exc:
                l.critical(f"Config error in {platform}.{inst_id}:\n{exc}")
                config_ok = False
                continue
            instances.append((f"{platform}/{inst_id}", driver_cls(inst_id, cfg, bridge)))
    return instances if config_ok else None


async def main():
    _load_all_drivers()

    l.info("SegBridge starting…")

    config_path = config_io.find_config(Path(u.get_data_path()))
    if config_path is None:
        l.critical(f"No config file found in: {u.get_data_path()} (tried config.json / .yaml / .toml)")
        return

    l.info(f"Loading config from: {config_path}")
    raw: dict = config_io.load_config(config_path)

    bridge = Bridge(StatsRegistry())
    bridge.load_rules()
    bridge.load_sensitive_values(raw)

    instances = build_drivers(raw, bridge)
    if instances is None:
        return
    if not instances:
        l.error("No drivers configured, nothing to do, exiting.")
        return

    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            l.error(f"Driver '{task.get_name()}' crashed: {exc}")

    driver_tasks: list[asyncio.Task] = []
    for name, drv in instances:
        task = asyncio.create_task(drv.start(), name=name)
        task.add_done_callback(_on_task_done)
        driver_tasks.append(task)
        l.info(f"Registered driver: {name}")

    try:
        await asyncio.gather(*driver_tasks, return_exceptions=True)
    except asyncio.CancelledError:
        l.info("SegBridge shutting down…")
        for task in driver_tasks:
            task.cancel()
        await asyncio.gather(*driver_tasks, return_exceptions=True)
        l.info("SegBridge stopped.")
    finally:
        for _, drv in instances:
            await drv.close()
        for name, _ in instances:
            l.info(bridge.status(name.split("/", 1)[1]))


def run() -> None:
    parser = argparse.ArgumentParser(prog="segbridge", description="SegBridge message transcoder and gateway")
    subparsers = parser.add_subparsers(dest="command")

    conv = subparsers.add_parser("convert", help="Convert a config file between formats (json/yaml/toml)")
    conv.add_argument("src", help="Source config file (e.g. config.json)")
    conv.add_argument("dst", help="Destination config file (e.g. config.yaml)")

    args = parser.parse_args()

    if args.command == "convert":
        cmd_convert(args.src, args.dst)
        sys.exit(0)

    error.install_excepthook()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
