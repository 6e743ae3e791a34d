"""Session gateway: per-connection lifecycle and inbound event dispatch.

Lifecycle:
    CONNECTING -> AUTHENTICATED   valid bearer token at handshake
    AUTHENTICATED -> ACTIVE       registration, metrics window, join fan-out
    ACTIVE -> DISCONNECTED        transport closed; unregister, leave fan-out

Inbound events are only processed while ACTIVE. Unknown event types and
malformed payloads are answered with an ``error`` frame to the sender
only; the connection stays active.

Protocol Message Types (inbound):
    - send_broadcast {text}
    - send_directed {toUserId, text}
    - fetch_conversation {withUserId}
    - mark_read {messageIds}
    - typing_start / typing_stop {targetUserId}
    - fetch_recent_conversations
    - fetch_online_users
    - ping {clientTimestamp}
    - fetch_network_stats
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from relaychat.auth.service import CredentialService, get_credential_service
from relaychat.config import AppSettings, HistorySettings, get_config
from relaychat.storage import ChatStore, persist

from .conversation import ConversationStateMachine
from .delivery import DeliveryRouter
from .metrics import MetricsSampler
from .models import Connection, ConnectionState, Transport
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class InvalidEventError(Exception):
    """Inbound frame is malformed or missing a required field."""


def _require_int(event: Dict[str, Any], key: str) -> int:
    value = event.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEventError(f"Invalid event: '{key}' must be an integer")
    return value


def _require_number(event: Dict[str, Any], key: str) -> float:
    value = event.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidEventError(f"Invalid event: '{key}' must be a number")
    return float(value)


def _require_int_list(event: Dict[str, Any], key: str) -> List[int]:
    value = event.get(key)
    if not isinstance(value, list) or any(
        isinstance(v, bool) or not isinstance(v, int) for v in value
    ):
        raise InvalidEventError(f"Invalid event: '{key}' must be a list of integers")
    return value


def _optional_text(event: Dict[str, Any], key: str) -> str:
    value = event.get(key, "")
    if not isinstance(value, str):
        raise InvalidEventError(f"Invalid event: '{key}' must be a string")
    return value


class SessionGateway:
    """Wires connections into the registry and dispatches their events."""

    def __init__(
        self,
        registry: PresenceRegistry,
        delivery: DeliveryRouter,
        conversations: ConversationStateMachine,
        store: ChatStore,
        credentials: CredentialService,
        history: Optional[HistorySettings] = None,
    ) -> None:
        self.registry = registry
        self.sampler = registry.sampler
        self.delivery = delivery
        self.conversations = conversations
        self.store = store
        self.credentials = credentials
        self.history = history or HistorySettings()

        self._handlers: Dict[str, Handler] = {
            "send_broadcast": self._on_send_broadcast,
            "send_directed": self._on_send_directed,
            "fetch_conversation": self._on_fetch_conversation,
            "mark_read": self._on_mark_read,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "fetch_recent_conversations": self._on_fetch_recent_conversations,
            "fetch_online_users": self._on_fetch_online_users,
            "ping": self._on_ping,
            "fetch_network_stats": self._on_fetch_network_stats,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def authenticate(self, transport: Transport, token: Optional[str]) -> Connection:
        """Verify the handshake credential.

        Raises:
            AuthenticationError: The connection must be refused.
        """
        identity = self.credentials.verify_token(token)
        connection = Connection(identity=identity, transport=transport)
        connection.state = ConnectionState.AUTHENTICATED
        return connection

    async def activate(self, connection: Connection) -> None:
        """Authenticated -> Active: register and announce the connection."""
        if connection.state != ConnectionState.AUTHENTICATED:
            return
        connection.state = ConnectionState.ACTIVE
        await self.registry.send_to(connection, {
            "type": "connected",
            "connectionId": connection.connection_id,
            "userId": connection.user_id,
            "displayName": connection.display_name,
        })
        await self.registry.register(connection)
        await persist(
            "setUserOnline",
            self.store.set_user_online(connection.user_id, connection.connection_id),
        )

    async def disconnect(self, connection: Connection) -> None:
        """Active -> Disconnected: unregister and announce the departure."""
        connection.state = ConnectionState.DISCONNECTED
        identity = await self.registry.unregister(connection.connection_id)
        if identity is None:
            # Never registered, or already evicted by a newer session
            return

        await self.conversations.clear_typing_for(identity.userId)
        if not self.registry.is_online(identity.userId):
            await persist("setUserOffline", self.store.set_user_offline(identity.userId))

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """Parse one inbound text frame and dispatch it."""
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(connection, "Invalid message format: expected JSON")
            return
        if not isinstance(event, dict):
            await self._send_error(connection, "Invalid message format: expected an object")
            return
        await self.dispatch(connection, event)

    async def dispatch(self, connection: Connection, event: Dict[str, Any]) -> None:
        if (
            connection.state != ConnectionState.ACTIVE
            or self.registry.get(connection.connection_id) is None
        ):
            logger.debug(
                f"[Gateway] Dropped event from inactive connection {connection.connection_id}"
            )
            return

        event_type = event.get("type")
        logger.debug("[Gateway] userId=%s event=%s", connection.user_id, event_type)
        handler = self._handlers.get(event_type)
        if handler is None:
            await self._send_error(connection, f"Unknown event type: {event_type}")
            return
        try:
            await handler(connection, event)
        except InvalidEventError as e:
            await self._send_error(connection, str(e))

    async def _send_error(self, connection: Connection, error: str) -> None:
        await self.registry.send_to(connection, {"type": "error", "error": error})

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_send_broadcast(self, connection: Connection, event: Dict[str, Any]) -> None:
        await self.delivery.send_broadcast(connection, _optional_text(event, "text"))

    async def _on_send_directed(self, connection: Connection, event: Dict[str, Any]) -> None:
        to_user_id = _require_int(event, "toUserId")
        await self.delivery.send_directed(connection, to_user_id, _optional_text(event, "text"))

    async def _on_fetch_conversation(self, connection: Connection, event: Dict[str, Any]) -> None:
        with_user_id = _require_int(event, "withUserId")
        result = await persist(
            "findDirectedConversation",
            self.store.find_directed_conversation(
                connection.user_id, with_user_id, self.history.conversation_limit
            ),
        )
        if not result.ok:
            return
        await self.registry.send_to(connection, {
            "type": "conversation_history",
            "withUserId": with_user_id,
            "messages": [m.model_dump(mode="json") for m in result.value],
        })

    async def _on_mark_read(self, connection: Connection, event: Dict[str, Any]) -> None:
        await self.conversations.mark_read(connection, _require_int_list(event, "messageIds"))

    async def _on_typing_start(self, connection: Connection, event: Dict[str, Any]) -> None:
        await self.conversations.start_typing(connection, _require_int(event, "targetUserId"))

    async def _on_typing_stop(self, connection: Connection, event: Dict[str, Any]) -> None:
        await self.conversations.stop_typing(connection, _require_int(event, "targetUserId"))

    async def _on_fetch_recent_conversations(
        self, connection: Connection, event: Dict[str, Any]
    ) -> None:
        result = await persist(
            "findRecentConversationsForUser",
            self.store.find_recent_conversations_for_user(
                connection.user_id, self.history.recent_conversations_limit
            ),
        )
        if not result.ok:
            return
        await self.registry.send_to(connection, {
            "type": "recent_conversations",
            "conversations": [c.model_dump(mode="json") for c in result.value],
        })

    async def _on_fetch_online_users(self, connection: Connection, event: Dict[str, Any]) -> None:
        result = await persist(
            "listOnlineUsers", self.store.list_online_users(connection.user_id)
        )
        if not result.ok:
            return
        await self.registry.send_to(connection, {
            "type": "online_users",
            "users": [u.model_dump(mode="json") for u in result.value],
        })

    async def _on_ping(self, connection: Connection, event: Dict[str, Any]) -> None:
        pong = self.sampler.record_ping(
            connection.connection_id, _require_number(event, "clientTimestamp")
        )
        if pong is not None:
            await self.registry.send_to(connection, {"type": "pong", **pong.model_dump(mode="json")})

    async def _on_fetch_network_stats(
        self, connection: Connection, event: Dict[str, Any]
    ) -> None:
        stats = self.sampler.network_stats(connection.connection_id)
        if stats is not None:
            await self.registry.send_to(
                connection, {"type": "network_stats", **stats.model_dump(mode="json")}
            )


# =============================================================================
# Process-wide instance
# =============================================================================

_gateway: Optional[SessionGateway] = None


def build_gateway(
    config: AppSettings,
    store: ChatStore,
    credentials: Optional[CredentialService] = None,
) -> SessionGateway:
    """Assemble the session core from configuration."""
    sampler = MetricsSampler(
        window_size=config.metrics.window_size,
        average_window=config.metrics.average_window,
    )
    registry = PresenceRegistry(
        sampler, evict_duplicates=config.presence.evict_duplicate_sessions
    )
    return SessionGateway(
        registry=registry,
        delivery=DeliveryRouter(registry, store, sampler),
        conversations=ConversationStateMachine(registry, store),
        store=store,
        credentials=credentials or get_credential_service(),
        history=config.history,
    )


def get_gateway() -> SessionGateway:
    """Return the process-wide gateway, building it on first use."""
    global _gateway
    if _gateway is None:
        config = get_config()
        _gateway = build_gateway(config, ChatStore.get_instance(config.database.path))
    return _gateway


def set_gateway(gateway: Optional[SessionGateway]) -> None:
    global _gateway
    _gateway = gateway
