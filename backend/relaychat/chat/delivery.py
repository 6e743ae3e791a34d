"""Delivery router for broadcast and directed messages.

Broadcast:
    persist (best-effort) -> push to every live connection, sender included.

Directed:
    validate recipient -> persist as ``sent`` -> if the recipient is live,
    persist ``delivered`` and only then push to the recipient -> ack the
    sender with the resulting status.

Persistence failures on a send are logged and swallowed: the chat stays
live even when a write is lost. Liveness is always re-checked through the
registry after an await, never taken from a value captured before it.
"""
import logging
from typing import Optional, Union

from relaychat.storage import ChatStore, persist

from .metrics import MetricsSampler
from .models import (
    BroadcastMessage,
    Connection,
    DirectedMessage,
    DirectedStatus,
    MessageKind,
    utcnow,
)
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)

RECIPIENT_NOT_FOUND = "Recipient not found"
SEND_FAILED = "Failed to send message"
TEXT_REQUIRED = "Message text is required"

Message = Union[BroadcastMessage, DirectedMessage]


class DeliveryRouter:
    """Routes outgoing chat messages to live connections."""

    def __init__(
        self,
        registry: PresenceRegistry,
        store: ChatStore,
        sampler: MetricsSampler,
    ) -> None:
        self.registry = registry
        self.store = store
        self.sampler = sampler

    async def route(self, sender: Connection, message: Message) -> Message:
        """Deliver an already-built message according to its kind."""
        if message.kind == MessageKind.BROADCAST:
            return await self._deliver_broadcast(message)
        return await self._deliver_directed(sender, message)

    # =========================================================================
    # Broadcast
    # =========================================================================

    async def send_broadcast(self, sender: Connection, text: str) -> Optional[BroadcastMessage]:
        """Send a public-room message from *sender*.

        Returns:
            The delivered message, or None if the text was empty.
        """
        if not text or not text.strip():
            await self.registry.send_to(sender, {
                "type": "error",
                "error": "Invalid message format: text is required",
            })
            return None

        self.sampler.count_sent(sender.connection_id)
        message = BroadcastMessage(
            senderId=sender.user_id,
            senderName=sender.display_name,
            text=text,
        )
        return await self.route(sender, message)

    async def _deliver_broadcast(self, message: BroadcastMessage) -> BroadcastMessage:
        result = await persist(
            "insertBroadcastMessage",
            self.store.insert_broadcast_message(
                message.senderId, message.senderName, message.text, message.createdAt
            ),
        )
        if result.ok:
            message.id = result.value

        # Fan out only after the persist attempt, whatever its outcome
        logger.info(
            f"[Delivery] Broadcast {message.id} from userId={message.senderId} "
            f"to {len(self.registry.connections)} connections"
        )
        await self.registry.broadcast(
            {"type": "new_broadcast_message", **message.model_dump(mode="json")}
        )
        return message

    # =========================================================================
    # Directed
    # =========================================================================

    async def send_directed(
        self, sender: Connection, to_user_id: int, text: str
    ) -> Optional[DirectedMessage]:
        """Send a one-to-one message from *sender* to *to_user_id*.

        Returns:
            The message with its final status, or None if it was rejected.
        """
        if not text or not text.strip():
            await self._send_error(sender, TEXT_REQUIRED)
            return None

        lookup = await persist("findUserById", self.store.find_user_by_id(to_user_id))
        if not lookup.ok:
            await self._send_error(sender, SEND_FAILED)
            return None
        recipient = lookup.value
        if recipient is None:
            logger.info(
                f"[Delivery] userId={sender.user_id} sent to unknown userId={to_user_id}"
            )
            await self._send_error(sender, RECIPIENT_NOT_FOUND)
            return None

        self.sampler.count_sent(sender.connection_id)
        message = DirectedMessage(
            fromUserId=sender.user_id,
            fromUsername=sender.display_name,
            toUserId=to_user_id,
            toUsername=recipient.username,
            text=text,
        )
        return await self.route(sender, message)

    async def _deliver_directed(
        self, sender: Connection, message: DirectedMessage
    ) -> DirectedMessage:
        inserted = await persist(
            "insertDirectedMessage",
            self.store.insert_directed_message(
                message.fromUserId,
                message.toUserId,
                message.text,
                DirectedStatus.SENT,
                message.createdAt,
            ),
        )
        if inserted.ok:
            message.id = inserted.value

        if self.registry.find_connection_by_user_id(message.toUserId) is not None:
            delivered_at = utcnow()
            if message.id is not None:
                await persist(
                    "updateDirectedMessageStatus",
                    self.store.update_directed_message_status(
                        message.id, DirectedStatus.DELIVERED, delivered_at
                    ),
                )
            message.status = DirectedStatus.DELIVERED
            message.deliveredAt = delivered_at

            payload = message.model_dump(mode="json")
            recipient = self.registry.find_connection_by_user_id(message.toUserId)
            if recipient is not None:
                await self.registry.send_to(
                    recipient, {"type": "new_directed_message", **payload}
                )
            else:
                # Status is monotonic, so a delivered write that raced a
                # disconnect stands; the recipient gets it from history.
                logger.warning(
                    f"[Delivery] userId={message.toUserId} left while directed "
                    f"{message.id} was marked delivered; not pushed"
                )
        else:
            payload = message.model_dump(mode="json")

        logger.info(
            f"[Delivery] Directed {message.id} userId={message.fromUserId} -> "
            f"userId={message.toUserId}: {message.status.value}"
        )
        if self.registry.get(sender.connection_id) is not None:
            await self.registry.send_to(
                sender, {"type": "directed_message_sent_ack", **payload}
            )
        return message

    async def _send_error(self, sender: Connection, reason: str) -> None:
        await self.registry.send_to(sender, {"type": "directed_send_error", "reason": reason})
