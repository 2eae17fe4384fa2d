from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from huddle.server.runtime import RelayRuntime

log = logging.getLogger("huddle.cmd.server")


def load_config(config_path: Optional[Path]) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if config_path is not None:
        config = yaml.safe_load(config_path.read_text()) or {}
    if os.getenv("HUDDLE_LISTEN"):
        config["listen"] = os.environ["HUDDLE_LISTEN"]
    if os.getenv("HUDDLE_LOG_LEVEL"):
        config["log_level"] = os.environ["HUDDLE_LOG_LEVEL"]
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = RelayRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="huddle signaling relay")
    parser.add_argument("--config", default=None, help="Path to relay YAML config")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)

    logging.basicConfig(
        level=str(config.get("log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
