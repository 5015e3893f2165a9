"""Registry of live real-time client connections."""

import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from nudge.utils.logger import log_debug, log_info


@runtime_checkable
class LiveConnection(Protocol):
    """What the dispatcher needs from a real-time connection."""

    async def send_json(self, payload: Dict[str, Any]) -> None:
        ...

    def is_alive(self) -> bool:
        ...


class ClientRegistry:
    """Tracks connected clients for the notification dispatcher.

    Registration and removal may happen from the transport layer while the
    monitor is fanning out; ``for_each`` therefore visits a snapshot taken
    under the lock, so a concurrent registration is either fully visible or
    not visible at all.
    """

    def __init__(self):
        self._clients: Dict[str, Tuple[LiveConnection, datetime]] = {}
        self._lock = threading.Lock()

    def register(self, connection: LiveConnection, client_id: Optional[str] = None) -> str:
        """Add a connection.

        Args:
            connection: The live connection
            client_id: Optional id to use instead of a generated one

        Returns:
            The client id
        """
        client_id = client_id or f"client_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._clients[client_id] = (connection, datetime.now())
            total = len(self._clients)
        log_info(f"Live client registered: {client_id} ({total} connected)", component="registry")
        return client_id

    def unregister(self, client_id: str) -> bool:
        """Remove a connection. Unknown ids are ignored."""
        with self._lock:
            removed = self._clients.pop(client_id, None) is not None
            total = len(self._clients)
        if removed:
            log_info(f"Live client removed: {client_id} ({total} connected)", component="registry")
        return removed

    def get(self, client_id: str) -> Optional[LiveConnection]:
        with self._lock:
            entry = self._clients.get(client_id)
        return entry[0] if entry else None

    def snapshot(self) -> List[Tuple[str, LiveConnection]]:
        with self._lock:
            return [(client_id, entry[0]) for client_id, entry in self._clients.items()]

    def for_each(self, visit: Callable[[str, LiveConnection], None]) -> int:
        """Call ``visit(client_id, connection)`` for every registered client.

        Returns:
            Number of clients visited
        """
        clients = self.snapshot()
        for client_id, connection in clients:
            visit(client_id, connection)
        return len(clients)

    def prune(self) -> List[str]:
        """Drop connections that report themselves dead.

        Returns:
            Ids that were removed
        """
        dead = []
        for client_id, connection in self.snapshot():
            try:
                alive = connection.is_alive()
            except Exception as e:
                log_debug(f"Health check failed for {client_id}: {e}", component="registry")
                alive = False
            if not alive:
                dead.append(client_id)

        for client_id in dead:
            self.unregister(client_id)
        return dead

    def count(self) -> int:
        with self._lock:
            return len(self._clients)

    def client_ids(self) -> List[str]:
        with self._lock:
            return list(self._clients)
