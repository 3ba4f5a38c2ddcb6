"""
server.py
----------
WebSocket front end for the locked-message chat.

Responsibilities:
- Accept WebSocket connections and give each one a connection id
  (the client's ?session=<id> when free, otherwise a fresh uuid4 hex)
- Feed connect / receive / disconnect events into one ChatServer
- Keep the receive loop alive no matter what a single frame does
- Load configuration (YAML file + CLI overrides) and configure logging
"""

import argparse
import asyncio
import logging
import os
import sys
import uuid
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import websockets
import yaml
from websockets import serve

from dispatcher import DEFAULT_SEND_TIMEOUT, ChatServer
from stores import DEFAULT_COLOR

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "chat.yaml"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
class ConfigError(Exception):
    """Configuration file or values are unusable."""


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    default_color: str = DEFAULT_COLOR
    log_level: str = "INFO"
    ping_interval: Optional[float] = 15
    ping_timeout: Optional[float] = 45
    send_timeout: float = DEFAULT_SEND_TIMEOUT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
        cfg = cls(**data)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not isinstance(self.host, str) or not self.host:
            raise ConfigError("host must be a non-empty string")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            raise ConfigError(f"port must be an integer in 0..65535, got {self.port!r}")
        if not isinstance(self.default_color, str) or not self.default_color:
            raise ConfigError("default_color must be a non-empty string")
        if not isinstance(self.log_level, str) or not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"unknown log_level {self.log_level!r}")
        for name in ("ping_interval", "ping_timeout"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0):
                raise ConfigError(f"{name} must be a positive number or null")
        if isinstance(self.send_timeout, bool) or not isinstance(self.send_timeout, (int, float)) or self.send_timeout <= 0:
            raise ConfigError(f"send_timeout must be a positive number, got {self.send_timeout!r}")


def load_config(path: Optional[str] = None) -> ServerConfig:
    """
    Read a YAML config file. With no explicit path, chat.yaml in the working
    directory is used when present; otherwise defaults apply.
    """
    if path is None:
        if not os.path.exists(DEFAULT_CONFIG_PATH):
            return ServerConfig()
        path = DEFAULT_CONFIG_PATH
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return ServerConfig.from_dict(data)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
def request_path(ws) -> str:
    """Request path (with query) across websockets versions."""
    request = getattr(ws, "request", None)  # websockets >= 13 (new asyncio API)
    path = getattr(request, "path", None) if request is not None else None
    return path or getattr(ws, "path", "") or ""


def connection_id_for(chat: ChatServer, ws) -> str:
    query = parse_qs(urlsplit(request_path(ws)).query)
    session = (query.get("session") or [None])[0]
    if session and not chat.registry.is_live(session):
        return session
    if session:
        log.warning(f"session {session} already live; issuing a new connection id")
    return uuid.uuid4().hex


async def handle_ws(ws, chat: ChatServer) -> None:
    """
    Per-connection loop: register, dispatch every text frame, unregister.
    A failing frame is logged and skipped; the connection stays up.
    """
    connection_id = connection_id_for(chat, ws)
    chat.connect(connection_id, ws)
    try:
        async for raw in ws:
            try:
                result = await chat.receive(connection_id, raw)
            except Exception:
                log.exception(f"[{connection_id}] handler error")
                continue
            if not result.ok:
                log.debug(f"[{connection_id}] {result.action or 'frame'} not applied: {result.detail}")
    except websockets.exceptions.ConnectionClosedOK:
        log.info(f"[{connection_id}] closed normally")
    except websockets.exceptions.ConnectionClosed as e:
        log.info(f"[{connection_id}] closed abnormally: {e}")
    finally:
        chat.disconnect(connection_id)


def build_server(chat: ChatServer, config: ServerConfig):
    """Return the websockets server (use as `async with`)."""
    async def ws_handler(ws, *_):  # older websockets also pass the path
        await handle_ws(ws, chat)

    return serve(
        ws_handler,
        config.host,
        config.port,
        ping_interval=config.ping_interval,
        ping_timeout=config.ping_timeout,
    )


async def main_loop(config: ServerConfig, chat: Optional[ChatServer] = None) -> None:
    chat = chat or ChatServer(default_color=config.default_color, send_timeout=config.send_timeout)
    async with build_server(chat, config):
        log.info(f"Listening on ws://{config.host}:{config.port}")
        await asyncio.Future()


# ------------------------------------------------------------
# Program entry point
# ------------------------------------------------------------
def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Locked-message chat server")
    parser.add_argument("--config", help=f"YAML config file (default: {DEFAULT_CONFIG_PATH} if present)")
    parser.add_argument("--host", help="Hostname or IP to bind")
    parser.add_argument("--port", type=int, help="TCP port to listen on")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ServerConfig:
    config = load_config(args.config)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level is not None:
        config.log_level = args.log_level
    config.validate()
    return config


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = resolve_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    try:
        asyncio.run(main_loop(config))
    except KeyboardInterrupt:
        log.info("Server shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
