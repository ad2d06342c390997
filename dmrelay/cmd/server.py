from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from dmrelay.server.runtime import DEFAULT_LISTEN, DEFAULT_ORIGINS, ServerRuntime

log = logging.getLogger("dmrelay.cmd.server")


def load_config(config_path: Optional[Path], env: Mapping[str, str] = os.environ) -> Dict[str, Any]:
    """YAML file (optional) first, then environment overrides."""

    config: Dict[str, Any] = {
        "listen": DEFAULT_LISTEN,
        "db_path": "chat.db",
        "allowed_origins": list(DEFAULT_ORIGINS),
        "log_level": "INFO",
    }
    if config_path is not None:
        config.update(yaml.safe_load(config_path.read_text()) or {})

    if env.get("RELAY_LISTEN"):
        config["listen"] = env["RELAY_LISTEN"]
    if env.get("PORT"):
        host = str(config["listen"]).rsplit(":", 1)[0]
        config["listen"] = f"{host}:{int(env['PORT'])}"
    if env.get("DB_PATH"):
        config["db_path"] = env["DB_PATH"]
    if env.get("CORS_ORIGIN"):
        origins = [o.strip() for o in env["CORS_ORIGIN"].split(",") if o.strip()]
        config["allowed_origins"] = None if "*" in origins else origins
    if env.get("LOG_LEVEL"):
        config["log_level"] = env["LOG_LEVEL"]

    if isinstance(config.get("allowed_origins"), str):
        config["allowed_origins"] = [config["allowed_origins"]]
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Direct-message WebSocket relay")
    parser.add_argument("--config", default=None, help="Path to server YAML config")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    logging.basicConfig(
        level=str(config.get("log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.debug("Effective config: %s", config)

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
