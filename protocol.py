"""
protocol.py
-----------
Wire format for the locked-message chat.

Every frame is one UTF-8 JSON object with a "type" discriminator.

Inbound (client -> server):
    set_password    userId [password, userColor, lastMessageId]
    send_message    userId, userName, userColor, content
    attempt_unlock  requesterId, messageId, guess
    ping            (heartbeat, ignored)

Outbound (server -> client):
    message, error, unlock_result, internal_delivery
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from stores import Message

# -----------------------
# Message type tags
# -----------------------
SET_PASSWORD = "set_password"
SEND_MESSAGE = "send_message"
ATTEMPT_UNLOCK = "attempt_unlock"
PING = "ping"

MESSAGE = "message"
ERROR = "error"
UNLOCK_RESULT = "unlock_result"
INTERNAL_DELIVERY = "internal_delivery"

REQUIRED_FIELDS = {
    SET_PASSWORD: ("userId",),
    SEND_MESSAGE: ("userId", "userName", "userColor", "content"),
    ATTEMPT_UNLOCK: ("requesterId", "messageId", "guess"),
}
OPTIONAL_FIELDS = {
    SET_PASSWORD: ("password", "userColor", "lastMessageId"),
}

# Fixed reply texts (clients match on these)
ERR_PASSWORD_NOT_SET = "Password not set for user"
ERR_MESSAGE_NOT_FOUND = "message not found"
ERR_OWNER_PASSWORD_NOT_SET = "owner password not set"
ERR_WRONG_PASSWORD = "wrong password"


class ProtocolError(ValueError):
    """Inbound frame that cannot be acted on (bad JSON, missing fields...)."""


@dataclass
class DispatchResult:
    """Outcome of handling one inbound frame; never raised, always returned."""
    ok: bool
    action: Optional[str] = None
    detail: Optional[str] = None


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------
def parse_inbound(raw) -> Dict[str, Any]:
    """Decode one text frame into a dict, or raise ProtocolError."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"frame is not UTF-8: {exc}") from exc
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as exc:
        # ValueError covers JSONDecodeError and oversized integer literals
        raise ProtocolError(f"invalid JSON: {exc}") from exc
    if not isinstance(msg, dict):
        raise ProtocolError(f"expected a JSON object, got {type(msg).__name__}")
    return msg


def validate_fields(msg: Dict[str, Any], msg_type: str) -> None:
    """Required fields must be strings; optional ones are strings or absent/null."""
    missing = [f for f in REQUIRED_FIELDS.get(msg_type, ()) if msg.get(f) is None]
    if missing:
        raise ProtocolError(f"{msg_type}: missing {', '.join(missing)}")
    for f in REQUIRED_FIELDS.get(msg_type, ()) + OPTIONAL_FIELDS.get(msg_type, ()):
        value = msg.get(f)
        if value is not None and not isinstance(value, str):
            raise ProtocolError(f"{msg_type}: field {f} must be a string")


# ---------------------------------------------------------------------------
# Outbound builders
# ---------------------------------------------------------------------------
def message_payload(msg: Message, color: str) -> Dict[str, Any]:
    return {
        "type": MESSAGE,
        "id": msg.id,
        "ownerId": msg.owner_id,
        "ownerName": msg.owner_name,
        "encryptedContent": msg.cipher_text,
        "timestamp": msg.timestamp,
        "userColor": color,
    }


def error_payload(text: str) -> Dict[str, Any]:
    return {"type": ERROR, "message": text}


def unlock_result(message_id: str, success: bool, *,
                  decrypted: Optional[str] = None,
                  owner_name: Optional[str] = None,
                  error: Optional[str] = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {"type": UNLOCK_RESULT, "messageId": message_id, "success": success}
    if decrypted is not None:
        result["decryptedContent"] = decrypted
    if owner_name is not None:
        result["ownerName"] = owner_name
    if error is not None:
        result["error"] = error
    return result


def internal_delivery(requester_id: str, inner: Dict[str, Any]) -> Dict[str, Any]:
    # inner payload travels as serialized JSON text, not a nested object
    return {
        "type": INTERNAL_DELIVERY,
        "requesterId": requester_id,
        "payload": encode(inner),
    }


def encode(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False)


def describe(msg: Dict[str, Any], fields: Sequence[str] = ("type", "userId", "requesterId", "messageId")) -> str:
    """Short log-safe summary of a frame (never includes content or secrets)."""
    return " | ".join(f"{f}:{msg[f]}" for f in fields if msg.get(f) is not None)
