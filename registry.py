"""
registry.py
-----------
Live connections and their connection <-> user-id bindings.

A binding is remembered after disconnect (connection id -> user id) so a
client that reconnects with the same session id gets its identity back
without sending set_password again.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)


class ConnectionRegistry:
    def __init__(self):
        self._live: Dict[str, Any] = {}       # connection id -> transport handle (insertion = connect order)
        self._bound: Dict[str, str] = {}      # connection id -> user id (live only)
        self._by_user: Dict[str, str] = {}    # user id -> connection id (live only)
        self._persisted: Dict[str, str] = {}  # connection id -> user id (survives disconnect)

    # -----------------------------------------------------------------------
    # Transport lifecycle
    # -----------------------------------------------------------------------
    def on_connect(self, connection_id: str, handle: Any) -> Optional[str]:
        """Register a live connection; returns the restored user id, if any."""
        self._live[connection_id] = handle
        user_id = self._persisted.get(connection_id)
        if user_id is not None:
            self._bind_live(connection_id, user_id)
            log.info(f"[{connection_id}] restored binding to {user_id}")
        return user_id

    def on_disconnect(self, connection_id: str) -> Optional[str]:
        """Drop a live connection; returns the user id it was bound to."""
        self._live.pop(connection_id, None)
        user_id = self._bound.pop(connection_id, None)
        if user_id is not None:
            self._persisted[connection_id] = user_id
            if self._by_user.get(user_id) == connection_id:
                del self._by_user[user_id]
        return user_id

    # -----------------------------------------------------------------------
    # Binding
    # -----------------------------------------------------------------------
    def bind(self, connection_id: str, user_id: str) -> None:
        """Bind connection to user (last bind wins on both sides) and persist it."""
        self._bind_live(connection_id, user_id)
        self._persisted[connection_id] = user_id

    def _bind_live(self, connection_id: str, user_id: str) -> None:
        previous_user = self._bound.get(connection_id)
        if previous_user is not None and previous_user != user_id:
            if self._by_user.get(previous_user) == connection_id:
                del self._by_user[previous_user]

        previous_conn = self._by_user.get(user_id)
        if previous_conn is not None and previous_conn != connection_id:
            # evict the older connection for this user
            self._bound.pop(previous_conn, None)
            self._persisted.pop(previous_conn, None)
            log.info(f"[{user_id}] binding moved {previous_conn} -> {connection_id}")

        self._bound[connection_id] = user_id
        self._by_user[user_id] = connection_id

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------
    def resolve_connection(self, user_id: str) -> Optional[str]:
        return self._by_user.get(user_id)

    def user_for(self, connection_id: str) -> Optional[str]:
        return self._bound.get(connection_id)

    def handle_for(self, connection_id: str) -> Optional[Any]:
        return self._live.get(connection_id)

    def is_live(self, connection_id: str) -> bool:
        return connection_id in self._live

    def bound_connections(self) -> List[Tuple[str, str, Any]]:
        """Snapshot of (connection id, user id, handle) for bound live connections."""
        return [
            (cid, self._bound[cid], handle)
            for cid, handle in list(self._live.items())
            if cid in self._bound
        ]

    def live_count(self) -> int:
        return len(self._live)
