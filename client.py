"""
client.py
----------
Terminal client for the locked-message chat.

Implements:
- set_password on every (re)connect, resuming after the last message seen
- Plain lines -> send_message; own messages are shown decrypted locally
- Other users' messages stay locked until /unlock <messageId> <guess>
- Unlock replies arrive as internal_delivery envelopes addressed to us
- Automatic reconnect every 3 seconds with the same session id
"""

import argparse
import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets

import cipher

RECONNECT_DELAY = 3  # seconds
COLORS = ["cadetblue", "darkgoldenrod", "cornflowerblue", "darkkhaki", "hotpink", "gold"]


@dataclass
class ClientState:
    name: str
    password: str
    color: str
    user_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_message_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------
def set_password_frame(state: ClientState) -> Dict[str, Any]:
    frame = {
        "type": "set_password",
        "userId": state.user_id,
        "password": state.password,
        "userColor": state.color,
    }
    if state.last_message_id:
        frame["lastMessageId"] = state.last_message_id
    return frame


def send_message_frame(state: ClientState, text: str) -> Dict[str, Any]:
    return {
        "type": "send_message",
        "userId": state.user_id,
        "userName": state.name,
        "userColor": state.color,
        "content": text,
    }


def attempt_unlock_frame(state: ClientState, message_id: str, guess: str) -> Dict[str, Any]:
    return {
        "type": "attempt_unlock",
        "requesterId": state.user_id,
        "messageId": message_id,
        "guess": guess,
    }


def with_session(server_url: str, session_id: str) -> str:
    """Append ?session=<id> so the server can restore our binding on reconnect."""
    parts = urlsplit(server_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "session"]
    query.append(("session", session_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


# ---------------------------------------------------------------------------
# Input / output helpers
# ---------------------------------------------------------------------------
def parse_command(line: str) -> Optional[Tuple[str, ...]]:
    """
    Map one input line to an action:
        ("send", text) | ("unlock", id, guess) | ("quit",) | ("usage", hint)
    Blank lines give None.
    """
    stripped = line.strip()
    if not stripped:
        return None
    if stripped == "/quit":
        return ("quit",)
    if stripped == "/unlock" or stripped.startswith("/unlock "):
        parts = stripped.split()
        if len(parts) != 3:
            return ("usage", "Usage: /unlock <messageId> <guess>")
        return ("unlock", parts[1], parts[2])
    return ("send", line)


def render_message(msg: Dict[str, Any], state: ClientState) -> str:
    if msg.get("ownerId") == state.user_id:
        return f"[you] {cipher.decrypt(msg.get('encryptedContent', ''), state.password)}"
    return f"{msg.get('ownerName')} ({msg.get('userColor')}) [{msg.get('id')}] (locked) {msg.get('encryptedContent')}"


def render_unlock_result(result: Dict[str, Any]) -> str:
    mid = result.get("messageId")
    if result.get("success"):
        return f"[unlocked {mid}] {result.get('ownerName')}: {result.get('decryptedContent')}"
    attempt = result.get("decryptedContent")
    tail = f" | {attempt}" if attempt is not None else ""
    return f"[unlock failed {mid}] {result.get('error')}{tail}"


def handle_incoming(raw, state: ClientState) -> Optional[str]:
    """Update state from one server frame and return the line to print (if any)."""
    try:
        msg = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return "[warn] unreadable frame from server"
    if not isinstance(msg, dict):
        return None

    mtype = msg.get("type")
    if mtype == "message":
        state.last_message_id = msg.get("id")
        return render_message(msg, state)
    if mtype == "internal_delivery" and msg.get("requesterId") == state.user_id:
        try:
            inner = json.loads(msg.get("payload") or "")
        except (TypeError, json.JSONDecodeError):
            return "[warn] unreadable private delivery"
        if isinstance(inner, dict) and inner.get("type") == "unlock_result":
            return render_unlock_result(inner)
        return None
    if mtype == "error":
        return f"[error] {msg.get('message')}"
    return None


# ---------------------------------------------------------------------------
# Main async client function
# ---------------------------------------------------------------------------
async def read_stdin(lines: "asyncio.Queue[Optional[str]]") -> None:
    loop = asyncio.get_running_loop()
    while True:
        try:
            line = await loop.run_in_executor(None, input)
        except (EOFError, KeyboardInterrupt):
            await lines.put(None)
            return
        await lines.put(line)
        if line.strip() == "/quit":
            return


async def chat_session(ws, state: ClientState, lines: "asyncio.Queue[Optional[str]]") -> bool:
    """Run one connection. Returns True when the user asked to quit."""

    async def sender() -> bool:
        while True:
            line = await lines.get()
            if line is None:
                return True
            cmd = parse_command(line)
            if cmd is None:
                continue
            if cmd[0] == "quit":
                return True
            if cmd[0] == "usage":
                print(cmd[1])
            elif cmd[0] == "unlock":
                await ws.send(json.dumps(attempt_unlock_frame(state, cmd[1], cmd[2])))
            else:
                await ws.send(json.dumps(send_message_frame(state, cmd[1])))

    async def receiver() -> bool:
        async for raw in ws:
            out = handle_incoming(raw, state)
            if out:
                print(out)
        return False

    tasks = [asyncio.ensure_future(sender()), asyncio.ensure_future(receiver())]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for t in pending:
        t.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    quit_requested = False
    for t in done:
        if t.exception() is not None:
            print(f"[warn] connection lost: {t.exception()}")
        elif t.result():
            quit_requested = True
    return quit_requested


async def run_client(state: ClientState, server_url: str) -> None:
    lines: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
    stdin_task = asyncio.ensure_future(read_stdin(lines))
    url = with_session(server_url, state.session_id)
    try:
        while True:
            try:
                async with websockets.connect(url, ping_interval=15, ping_timeout=45) as ws:
                    await ws.send(json.dumps(set_password_frame(state)))
                    print(f"Connected to {server_url} as {state.name} (id={state.user_id})")
                    if await chat_session(ws, state, lines):
                        return
            except (OSError, websockets.exceptions.WebSocketException) as e:
                print(f"[warn] connection lost: {e}")
            print(f"Disconnected, retrying in {RECONNECT_DELAY}s...")
            await asyncio.sleep(RECONNECT_DELAY)
    finally:
        stdin_task.cancel()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Locked-message chat client")
    parser.add_argument("--user", required=True, help="Display name")
    parser.add_argument("--password", required=True, help="Digit code that locks your messages")
    parser.add_argument("--server", default="ws://127.0.0.1:8765/ws", help="Server WebSocket URL")
    parser.add_argument("--color", help="Display color (random if omitted)")
    parser.add_argument("--session", help="Session id to resume an earlier binding")
    args = parser.parse_args(argv)
    if not (args.password.isascii() and args.password.isdigit()):
        parser.error("--password must be one or more digits")

    state = ClientState(
        name=args.user,
        password=args.password,
        color=args.color or COLORS[uuid.uuid4().int % len(COLORS)],
    )
    if args.session:
        state.session_id = args.session

    try:
        asyncio.run(run_client(state, args.server))
    except KeyboardInterrupt:
        print("\nClient shutting down...")


if __name__ == "__main__":
    main()
