"""Directed-conversation state: read receipts and typing indicators.

Message status moves sent -> delivered -> read and never backwards; the
guard lives in the store's status updates. A message sent while the
recipient was offline may go straight from sent to read.

Typing state is one record per ordered (user, target) pair with overwrite
semantics. Notifications go to the target's live connection only; the
state is recorded even when the target is offline.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from relaychat.storage import ChatStore, persist

from .models import Connection, DirectedStatus, ReadReceipt, utcnow
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


@dataclass
class TypingState:
    is_typing: bool
    updated_at: datetime


class ConversationStateMachine:
    """Read receipts and per-pair typing indicators."""

    def __init__(self, registry: PresenceRegistry, store: ChatStore) -> None:
        self.registry = registry
        self.store = store

        # (userId, targetUserId) -> TypingState
        self._typing: Dict[Tuple[int, int], TypingState] = {}

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(self, reader: Connection, message_ids: Iterable[int]) -> List[int]:
        """Mark the reader's messages as read and notify their senders.

        Ids addressed to someone else are skipped silently. Each live sender
        gets one read_receipt listing the affected ids of its own messages.

        Returns:
            Ids of the messages owned by the reader.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []

        found = await persist("findDirectedMessages", self.store.find_directed_messages(ids))
        if not found.ok:
            return []
        affected = [m for m in found.value if m.toUserId == reader.user_id]
        skipped = len(ids) - len(affected)
        if skipped:
            logger.debug(
                f"[Conversation] mark_read by userId={reader.user_id} skipped {skipped} foreign ids"
            )
        if not affected:
            return []

        affected_ids = [m.id for m in affected]
        read_at = utcnow()
        updated = await persist(
            "updateDirectedMessagesStatusBatch",
            self.store.update_directed_messages_status_batch(
                affected_ids,
                DirectedStatus.READ,
                read_at,
                constrained_to_recipient=reader.user_id,
            ),
        )
        if not updated.ok:
            return []

        for sender_id in sorted({m.fromUserId for m in affected}):
            receipt = ReadReceipt(
                messageIds=[m.id for m in affected if m.fromUserId == sender_id],
                readBy=reader.user_id,
                readerName=reader.display_name,
                readAt=read_at,
            )
            await self.registry.send_to_user(
                sender_id, {"type": "read_receipt", **receipt.model_dump(mode="json")}
            )

        logger.info(
            f"[Conversation] userId={reader.user_id} read {len(affected_ids)} messages"
        )
        return affected_ids

    # =========================================================================
    # Typing indicators
    # =========================================================================

    def typing_state(self, user_id: int, target_user_id: int) -> Optional[TypingState]:
        return self._typing.get((user_id, target_user_id))

    async def start_typing(self, typer: Connection, target_user_id: int) -> None:
        now = utcnow()
        self._typing[(typer.user_id, target_user_id)] = TypingState(True, now)
        await persist(
            "upsertTypingIndicator",
            self.store.upsert_typing_indicator(typer.user_id, target_user_id, True, now),
        )
        await self.registry.send_to_user(target_user_id, {
            "type": "typing",
            "userId": typer.user_id,
            "displayName": typer.display_name,
        })

    async def stop_typing(self, typer: Connection, target_user_id: int) -> None:
        await self._stop(typer.user_id, target_user_id, notify=True)

    async def _stop(self, user_id: int, target_user_id: int, notify: bool) -> None:
        now = utcnow()
        self._typing[(user_id, target_user_id)] = TypingState(False, now)
        await persist(
            "updateTypingIndicator",
            self.store.update_typing_indicator(user_id, target_user_id, False, now),
        )
        if notify:
            await self.registry.send_to_user(target_user_id, {
                "type": "stop_typing",
                "userId": user_id,
            })

    async def clear_typing_for(self, user_id: int) -> None:
        """Implicit stop for every typing pair involving a departing user.

        Targets the user was typing to are notified; pairs aimed at the
        user are reset without notification.
        """
        active = [
            pair for pair, state in self._typing.items()
            if state.is_typing and user_id in pair
        ]
        for typer_id, target_id in active:
            await self._stop(typer_id, target_id, notify=typer_id == user_id)
