"""
stores.py
---------
In-memory state for the chat server.

- MessageStore: single append-only log of locked messages (ciphertext only)
- DeliveryCursors: per user-id watermark into that log
- CredentialStore: user-id -> secret / display color

Nothing here is persisted; everything lives for the process lifetime.
"""

import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

DEFAULT_COLOR = "black"


@dataclass(frozen=True)
class Message:
    id: str
    owner_id: str
    owner_name: str
    cipher_text: str
    timestamp: int


# ---------------------------------------------------------------------------
# Message log
# ---------------------------------------------------------------------------
class MessageStore:
    """
    Ordered, append-only log. Append order is the delivery order.

    The list and id index are guarded by one lock so slice() always returns
    a consistent snapshot, never a half-appended record.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._log: List[Message] = []
        self._positions: Dict[str, int] = {}  # message id -> index in _log

    def __len__(self) -> int:
        with self._lock:
            return len(self._log)

    def append(self, owner_id: str, owner_name: str, cipher_text: str,
               timestamp: int) -> Tuple[Message, int]:
        """Store a new record and return it with the resulting log length."""
        with self._lock:
            mid = str(uuid.uuid4())
            while mid in self._positions:
                mid = str(uuid.uuid4())
            msg = Message(mid, owner_id, owner_name, cipher_text, timestamp)
            self._positions[mid] = len(self._log)
            self._log.append(msg)
            return msg, len(self._log)

    def lookup_by_id(self, message_id: str) -> Optional[Message]:
        with self._lock:
            pos = self._positions.get(message_id)
            return None if pos is None else self._log[pos]

    def index_after(self, message_id: str) -> int:
        """Position just past message_id, or 0 when it is unknown."""
        with self._lock:
            pos = self._positions.get(message_id)
            return 0 if pos is None else pos + 1

    def slice(self, from_index: int) -> Tuple[Message, ...]:
        with self._lock:
            return tuple(self._log[max(from_index, 0):])


# ---------------------------------------------------------------------------
# Delivery cursors
# ---------------------------------------------------------------------------
class DeliveryCursors:
    """user-id -> number of log entries already delivered to that user."""

    def __init__(self):
        self._cursors: Dict[str, int] = {}

    def get(self, user_id: str) -> int:
        return self._cursors.get(user_id, 0)

    def advance(self, user_id: str, position: int) -> int:
        # Never move backwards; a stale position is simply ignored.
        current = self._cursors.get(user_id, 0)
        if position > current:
            self._cursors[user_id] = position
            return position
        self._cursors.setdefault(user_id, current)
        return current

    def snapshot(self) -> Dict[str, int]:
        return dict(self._cursors)


# ---------------------------------------------------------------------------
# Credentials / colors
# ---------------------------------------------------------------------------
class CredentialStore:
    """Per-user secret (cipher key) and display color. Last write wins."""

    def __init__(self, default_color: str = DEFAULT_COLOR):
        self.default_color = default_color
        self._secrets: Dict[str, str] = {}
        self._colors: Dict[str, str] = {}

    def set_secret(self, user_id: str, secret: str) -> None:
        self._secrets[user_id] = secret

    def get_secret(self, user_id: str) -> Optional[str]:
        return self._secrets.get(user_id)

    def has_secret(self, user_id: str) -> bool:
        # "" is a valid (if useless) secret
        return user_id in self._secrets

    def set_color(self, user_id: str, color: str) -> None:
        self._colors[user_id] = color

    def get_color(self, user_id: str) -> str:
        return self._colors.get(user_id, self.default_color)
