"""Presence registry: the single source of truth for who is online now.

The registry owns the live Connection records and, together with the
MetricsSampler, their metrics windows. Other components read it through
the accessors below and push frames through its send helpers.

Thread Safety:
    Designed for a single event loop. Every multi-step mutation completes
    before the first await, so a register/unregister is never observed
    half-applied by another task.

Performance Notes:
    - Fan-out uses asyncio.gather() for concurrent delivery
    - Reverse lookup by userId is an O(1) dict index
"""
import asyncio
import logging
from typing import Dict, List, Optional

from .metrics import MetricsSampler
from .models import Connection, ConnectionState, Identity, PresenceEntry

logger = logging.getLogger(__name__)

# Close code sent to a connection replaced by a newer login of the same user
SESSION_REPLACED_CLOSE_CODE = 4000


class PresenceRegistry:
    """Live connections keyed by connection id, indexed by user id.

    Attributes:
        sampler: Metrics sampler whose windows follow connection lifetime.
        evict_duplicates: When True a second connection for a user evicts
            the first; otherwise the last registered wins reverse lookup.
    """

    def __init__(self, sampler: MetricsSampler, evict_duplicates: bool = True) -> None:
        self.sampler = sampler
        self.evict_duplicates = evict_duplicates

        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}

        # userId -> connection_id of the connection used for delivery
        self._by_user: Dict[int, str] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    async def register(self, connection: Connection) -> Optional[Connection]:
        """Insert a live connection and announce it.

        Idempotent per connection id. Notifies every other connection of
        the join and pushes a fresh snapshot to everyone.

        Returns:
            The evicted older connection of the same user, if any.
        """
        connection_id = connection.connection_id
        if connection_id in self.connections:
            return None

        user_id = connection.user_id
        evicted: Optional[Connection] = None
        existing_id = self._by_user.get(user_id)
        if existing_id is not None and self.evict_duplicates:
            evicted = self.connections.pop(existing_id, None)
            self.sampler.close(existing_id)
            if evicted is not None:
                evicted.state = ConnectionState.DISCONNECTED

        self.connections[connection_id] = connection
        self._by_user[user_id] = connection_id
        self.sampler.open(connection_id)
        logger.info(
            f"[Presence] Registered {connection.display_name} (userId={user_id}, "
            f"connection={connection_id}). {len(self.connections)} live connections"
        )

        if evicted is not None:
            await self._evict(evicted)
        else:
            await self.broadcast_except(
                {"type": "presence_joined", "user": connection.identity.model_dump()},
                exclude_connection_id=connection_id,
            )
        await self.broadcast_snapshot()
        return evicted

    async def _evict(self, connection: Connection) -> None:
        logger.info(
            f"[Presence] Evicting connection {connection.connection_id} "
            f"of userId={connection.user_id} (replaced by newer session)"
        )
        await self._safe_send(connection, {
            "type": "session_replaced",
            "message": "Signed in from another connection",
        })
        try:
            await connection.transport.close(code=SESSION_REPLACED_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"[Presence] Close of evicted connection failed: {e}")

    async def unregister(self, connection_id: str) -> Optional[Identity]:
        """Remove a live connection and its metrics window.

        Returns:
            The removed identity, or None if the connection was not registered.
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None

        self.sampler.close(connection_id)
        user_id = connection.user_id
        if self._by_user.get(user_id) == connection_id:
            del self._by_user[user_id]
            fallback = self._any_connection_for(user_id)
            if fallback is not None:
                self._by_user[user_id] = fallback.connection_id
        connection.state = ConnectionState.DISCONNECTED
        logger.info(
            f"[Presence] Unregistered {connection.display_name} (userId={user_id}). "
            f"{len(self.connections)} live connections"
        )

        if user_id not in self._by_user:
            await self.broadcast(
                {"type": "presence_left", "user": connection.identity.model_dump()}
            )
        await self.broadcast_snapshot()
        return connection.identity

    def _any_connection_for(self, user_id: int) -> Optional[Connection]:
        for conn in self.connections.values():
            if conn.user_id == user_id:
                return conn
        return None

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def find_connection_by_user_id(self, user_id: int) -> Optional[Connection]:
        """The live connection for *user_id*, or None if the user is offline."""
        connection_id = self._by_user.get(user_id)
        if connection_id is None:
            return None
        return self.connections.get(connection_id)

    def is_online(self, user_id: int) -> bool:
        return self.find_connection_by_user_id(user_id) is not None

    def live_connections(self) -> List[Connection]:
        return list(self.connections.values())

    def snapshot(self) -> List[PresenceEntry]:
        """Presence with current quality, one entry per user, never cached."""
        entries = []
        for user_id, connection_id in self._by_user.items():
            connection = self.connections.get(connection_id)
            if connection is None:
                continue
            latency = self.sampler.average_latency(connection_id)
            jitter = self.sampler.jitter(connection_id)
            entries.append(PresenceEntry(
                userId=user_id,
                displayName=connection.display_name,
                latency=latency,
                jitter=jitter,
                connectionQuality=self.sampler.quality(connection_id),
            ))
        return entries

    # =========================================================================
    # Push helpers
    # =========================================================================

    async def broadcast_snapshot(self) -> None:
        users = [entry.model_dump(mode="json") for entry in self.snapshot()]
        await self.broadcast({"type": "presence_snapshot", "users": users})

    async def send_to(self, connection: Connection, message: dict) -> bool:
        """Push a frame to one connection. Returns False if the send failed."""
        return await self._safe_send(connection, message)

    async def send_to_user(self, user_id: int, message: dict) -> bool:
        """Push a frame to a user's live connection, if any."""
        connection = self.find_connection_by_user_id(user_id)
        if connection is None:
            return False
        return await self._safe_send(connection, message)

    async def broadcast(self, message: dict) -> None:
        """Push a frame to every live connection concurrently."""
        await self._fan_out(self.live_connections(), message)

    async def broadcast_except(self, message: dict, exclude_connection_id: str) -> None:
        """Push a frame to every live connection except one."""
        connections = [
            conn for conn in self.live_connections()
            if conn.connection_id != exclude_connection_id
        ]
        await self._fan_out(connections, message)

    async def _fan_out(self, connections: List[Connection], message: dict) -> None:
        if not connections:
            return
        await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

    async def _safe_send(self, connection: Connection, message: dict) -> bool:
        try:
            await connection.transport.send_json(message)
        except Exception as e:
            logger.debug(
                f"Failed to send to connection {connection.connection_id}: {e}"
            )
            return False
        self.sampler.count_received(connection.connection_id)
        return True
