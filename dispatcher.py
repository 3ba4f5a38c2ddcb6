"""
dispatcher.py
-------------
Chat coordination core: one ChatServer object owns all shared state and
routes inbound frames.

Responsibilities:
- Bind connections to user ids (set_password) and replay the unseen backlog
- Lock each new message with its owner's secret and append it to the log
- Fan out unseen log entries to every bound connection (per-user cursors)
- Answer unlock attempts privately to the requesting user

All shared-state mutations run on the event loop. Appending to the log,
advancing cursors and fanning out happen under one asyncio.Lock so two sends
never interleave their deliveries.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import cipher
from protocol import (
    ATTEMPT_UNLOCK,
    ERR_MESSAGE_NOT_FOUND,
    ERR_OWNER_PASSWORD_NOT_SET,
    ERR_PASSWORD_NOT_SET,
    ERR_WRONG_PASSWORD,
    PING,
    SEND_MESSAGE,
    SET_PASSWORD,
    DispatchResult,
    ProtocolError,
    describe,
    encode,
    error_payload,
    internal_delivery,
    message_payload,
    now_ms,
    parse_inbound,
    unlock_result,
    validate_fields,
)
from registry import ConnectionRegistry
from stores import DEFAULT_COLOR, CredentialStore, DeliveryCursors, MessageStore

DEFAULT_SEND_TIMEOUT = 5.0  # seconds a single frame may take to reach one peer

log = logging.getLogger(__name__)


def is_open(ws) -> bool:
    """Return True if a websocket-like handle can still be written to."""
    if ws is None:
        return False
    try:
        # websockets >= 10 (legacy and new asyncio implementations)
        state = getattr(ws, "state", None)
        if state is not None:
            return getattr(state, "name", "").upper() == "OPEN"
        if hasattr(ws, "open"):
            return bool(ws.open)
        if hasattr(ws, "closed"):
            return not ws.closed
    except Exception:
        return False
    return getattr(ws, "close_code", None) is None


# ---------------------------------------------------------------------------
# Server state
# ---------------------------------------------------------------------------
class ChatServer:
    """
    All process state for one chat room. Transports talk to it through
    connect(), disconnect() and receive().
    """

    def __init__(self, default_color: str = DEFAULT_COLOR, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        self.send_timeout = send_timeout
        self.registry = ConnectionRegistry()
        self.messages = MessageStore()
        self.cursors = DeliveryCursors()
        self.credentials = CredentialStore(default_color)
        self.log_lock = asyncio.Lock()
        self.broadcaster = Broadcaster(self)
        self.dispatcher = ProtocolDispatcher(self)

    def connect(self, connection_id: str, handle: Any) -> Optional[str]:
        user_id = self.registry.on_connect(connection_id, handle)
        log.info(f"[{connection_id}] connected ({self.registry.live_count()} live)")
        return user_id

    def disconnect(self, connection_id: str) -> Optional[str]:
        user_id = self.registry.on_disconnect(connection_id)
        log.info(f"[{connection_id}] disconnected" + (f" (was {user_id})" if user_id else ""))
        return user_id

    async def receive(self, connection_id: str, raw) -> DispatchResult:
        return await self.dispatcher.dispatch(connection_id, raw)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------
class Broadcaster:
    def __init__(self, server: ChatServer):
        self.server = server

    async def send_to(self, connection_id: str, payload: Dict[str, Any]) -> bool:
        """Best-effort single send; failures are logged, never raised."""
        ws = self.server.registry.handle_for(connection_id)
        if not is_open(ws):
            log.debug(f"[{connection_id}] not open; dropping {payload.get('type')}")
            return False
        try:
            # bounded: fan-out runs under log_lock, a stalled peer must not hold it
            await asyncio.wait_for(ws.send(encode(payload)), self.server.send_timeout)
            return True
        except asyncio.TimeoutError:
            log.warning(f"[{connection_id}] send timed out after {self.server.send_timeout}s")
            return False
        except Exception as e:
            log.warning(f"[{connection_id}] send failed: {e}")
            return False

    def message_for(self, msg) -> Dict[str, Any]:
        return message_payload(msg, self.server.credentials.get_color(msg.owner_id))

    async def broadcast_new_messages(self) -> int:
        """
        Push each bound connection the part of the log its user has not seen,
        then move that user's cursor to the end. Unbound connections get nothing.

        Callers must hold server.log_lock.
        """
        messages = self.server.messages
        cursors = self.server.cursors
        delivered = 0
        for cid, user_id, _ in self.server.registry.bound_connections():
            start = cursors.get(user_id)
            pending = messages.slice(start)
            for msg in pending:
                if await self.send_to(cid, self.message_for(msg)):
                    delivered += 1
            cursors.advance(user_id, start + len(pending))
        return delivered

    async def deliver_private(self, user_id: str, payload: Dict[str, Any]) -> bool:
        cid = self.server.registry.resolve_connection(user_id)
        if cid is None:
            log.debug(f"[{user_id}] no bound connection; private {payload.get('type')} dropped")
            return False
        return await self.send_to(cid, internal_delivery(user_id, payload))


# ---------------------------------------------------------------------------
# Inbound routing
# ---------------------------------------------------------------------------
class ProtocolDispatcher:
    def __init__(self, server: ChatServer):
        self.server = server
        self._handlers = {
            SET_PASSWORD: self.set_password,
            SEND_MESSAGE: self.send_message,
            ATTEMPT_UNLOCK: self.attempt_unlock,
        }

    async def dispatch(self, connection_id: str, raw) -> DispatchResult:
        """Handle one inbound frame. Bad input becomes an ok=False result."""
        try:
            msg = parse_inbound(raw)
        except ProtocolError as e:
            log.warning(f"[{connection_id}] dropped frame: {e}")
            return DispatchResult(False, None, str(e))

        mtype = msg.get("type")
        if mtype == PING:
            log.debug(f"[{connection_id}] heartbeat")
            return DispatchResult(True, PING, "ignored")
        handler = self._handlers.get(mtype) if isinstance(mtype, str) else None
        if handler is None:
            log.debug(f"[{connection_id}] ignoring message type {mtype!r}")
            return DispatchResult(True, None, "ignored")

        try:
            validate_fields(msg, mtype)
        except ProtocolError as e:
            log.warning(f"[{connection_id}] dropped frame: {e}")
            return DispatchResult(False, mtype, str(e))

        log.info(f"[{connection_id}] {describe(msg)}")
        return await handler(connection_id, msg)

    # -----------------------------------------------------------------------
    # set_password
    # -----------------------------------------------------------------------
    async def set_password(self, connection_id: str, msg: Dict[str, Any]) -> DispatchResult:
        server = self.server
        user_id = msg["userId"]

        server.registry.bind(connection_id, user_id)
        if msg.get("userColor") is not None:
            server.credentials.set_color(user_id, msg["userColor"])
        if msg.get("password") is not None:
            server.credentials.set_secret(user_id, msg["password"])

        # Backlog and cursor move under the log lock so a concurrent send
        # either lands in this backlog or in the broadcast after its append.
        async with server.log_lock:
            last_id = msg.get("lastMessageId")
            if last_id is not None:
                start = server.messages.index_after(last_id)
            else:
                start = server.cursors.get(user_id)
            backlog = server.messages.slice(start)
            server.cursors.advance(user_id, start + len(backlog))
            for entry in backlog:
                await server.broadcaster.send_to(connection_id, server.broadcaster.message_for(entry))

        return DispatchResult(True, SET_PASSWORD, f"backlog={len(backlog)}")

    # -----------------------------------------------------------------------
    # send_message
    # -----------------------------------------------------------------------
    async def send_message(self, connection_id: str, msg: Dict[str, Any]) -> DispatchResult:
        server = self.server
        user_id = msg["userId"]

        secret = server.credentials.get_secret(user_id)
        if secret is None:
            await server.broadcaster.send_to(connection_id, error_payload(ERR_PASSWORD_NOT_SET))
            return DispatchResult(False, SEND_MESSAGE, ERR_PASSWORD_NOT_SET)

        locked = cipher.encrypt(msg["content"], secret)
        async with server.log_lock:
            entry, length = server.messages.append(user_id, msg["userName"], locked, now_ms())
            delivered = await server.broadcaster.broadcast_new_messages()

        log.info(f"[{user_id}] message {entry.id} appended at #{length}, {delivered} deliveries")
        return DispatchResult(True, SEND_MESSAGE, entry.id)

    # -----------------------------------------------------------------------
    # attempt_unlock
    # -----------------------------------------------------------------------
    async def attempt_unlock(self, connection_id: str, msg: Dict[str, Any]) -> DispatchResult:
        server = self.server
        requester_id = msg["requesterId"]
        message_id = msg["messageId"]
        guess = msg["guess"]

        target = server.messages.lookup_by_id(message_id)
        if target is None:
            result = unlock_result(message_id, False, error=ERR_MESSAGE_NOT_FOUND)
        else:
            secret = server.credentials.get_secret(target.owner_id)
            if secret is None:
                result = unlock_result(message_id, False, error=ERR_OWNER_PASSWORD_NOT_SET)
            elif guess == secret:
                result = unlock_result(
                    message_id, True,
                    decrypted=cipher.decrypt(target.cipher_text, secret),
                    owner_name=target.owner_name,
                )
            else:
                # wrong key still "decrypts", just into garbage
                result = unlock_result(
                    message_id, False,
                    decrypted=cipher.decrypt(target.cipher_text, guess),
                    error=ERR_WRONG_PASSWORD,
                )

        await server.broadcaster.deliver_private(requester_id, result)
        return DispatchResult(result["success"], ATTEMPT_UNLOCK, result.get("error"))
