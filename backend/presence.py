import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Optional, Protocol

from errors import TransportUnavailable


class Connection(Protocol):
    id: str

    def deliver(self, message: dict) -> bool:
        ...


class PresenceRegistry:
    """Who is reachable right now, indexed both ways.

    Disconnects arrive with the connection only, so the registry keeps
    user -> connection and connection -> user together and only ever changes
    them as a pair. Mutations for one user are serialized, including the
    contact notification they trigger, so online/offline events for a user go
    out in the order the registrations happened.
    """

    def __init__(self, notifier=None):
        self.notifier = notifier
        self._connections: Dict[str, Connection] = {}
        self._users: Dict[Connection, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    def resolve(self, user_id: str) -> Optional[Connection]:
        return self._connections.get(user_id)

    def require(self, user_id: str) -> Connection:
        connection = self._connections.get(user_id)
        if connection is None:
            raise TransportUnavailable(user_id)
        return connection

    def identity_of(self, connection: Connection) -> Optional[str]:
        return self._users.get(connection)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def register(self, user_id: str, connection: Connection):
        # The same socket claiming a new identity frees the old one first
        previous_user = self._users.get(connection)
        if previous_user is not None and previous_user != user_id:
            await self.unregister(connection)

        async with self._user_lock(user_id):
            replaced = self._connections.get(user_id)
            if replaced is not None and replaced is not connection:
                self._users.pop(replaced, None)
                logging.info(f"User {user_id} reconnected, dropping stale connection {replaced.id}")
            self._connections[user_id] = connection
            self._users[connection] = user_id
            logging.info(f"User {user_id} registered with connection {connection.id}")

            if self.notifier is not None:
                await self.notifier.announce(self, user_id, online=True)

    async def unregister(self, connection: Connection) -> Optional[str]:
        user_id = self._users.get(connection)
        if user_id is None:
            return None

        async with self._user_lock(user_id):
            # Replaced by a reconnect while we waited
            if self._users.get(connection) != user_id:
                return None
            del self._users[connection]
            if self._connections.get(user_id) is connection:
                del self._connections[user_id]
            logging.info(f"User {user_id} disconnected.")

            if self.notifier is not None:
                await self.notifier.announce(self, user_id, online=False)
        return user_id

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        # A user's lock lives only while someone holds or waits on it
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]
