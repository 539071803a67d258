"""
Per-conversation delivery state machine.

``ConversationState`` owns the canonical list of messages for one open
conversation. Every event from the dual-channel subscriber goes through
``apply``; the merge rules live in ``merge_message`` and nowhere else:

- inserts are idempotent by message id
- ``delivery_state`` only moves forward (sent < delivered < seen)
- ``deleted_for_everyone`` is sticky; the tombstone freezes content and
  reactions
- reactions merge per reactor, the incoming value wins

The visible order is re-derived from ``(created_at, id)`` after every
mutation, so channel arrival order never leaks into the display.

Receipts for the peer's messages are written back through an injected
coroutine after a short debounce, batching bursts of incoming messages. A
failed write is logged and retried on the next qualifying event.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from vchats.core.logging import get_logger
from vchats.models.message import TOMBSTONE_TEXT, DeliveryState
from vchats.schemas.events import (
    BulkSeenUpdate,
    ConversationEvent,
    MessageDeleted,
    MessageInserted,
    MessageSnapshot,
    MessageUpdated,
)

logger = get_logger(__name__)

ReceiptWriter = Callable[[List[str], DeliveryState], Awaitable[Any]]
IncomingHook = Callable[[MessageSnapshot], None]


def merge_message(existing: MessageSnapshot, incoming: MessageSnapshot) -> MessageSnapshot:
    """Reconcile two reports of the same message."""
    state = DeliveryState.most_advanced(existing.delivery_state, incoming.delivery_state)

    if existing.deleted_for_everyone:
        return existing.model_copy(update={"delivery_state": state})

    if incoming.deleted_for_everyone:
        return existing.model_copy(
            update={
                "delivery_state": state,
                "deleted_for_everyone": True,
                "content": TOMBSTONE_TEXT,
                "image_url": None,
            }
        )

    reactions = {**existing.reactions, **incoming.reactions}
    return existing.model_copy(update={"delivery_state": state, "reactions": reactions})


class ConversationState:
    """Deduplicated, sorted view of the conversation between ``self_id`` and ``peer_id``."""

    def __init__(
        self,
        self_id: str,
        peer_id: str,
        send_receipts: Optional[ReceiptWriter] = None,
        on_incoming: Optional[IncomingHook] = None,
        debounce_seconds: float = 0.1,
    ):
        self.self_id = self_id
        self.peer_id = peer_id
        self.send_receipts = send_receipts
        self.on_incoming = on_incoming
        self.debounce_seconds = debounce_seconds

        self.focused = False
        self.last_receipt_error: Optional[BaseException] = None

        self._by_id: Dict[str, MessageSnapshot] = {}
        self._ordered: List[MessageSnapshot] = []
        self._removed: Set[str] = set()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_again = False
        self._closed = False

    # -- read side ---------------------------------------------------------

    @property
    def messages(self) -> List[MessageSnapshot]:
        return list(self._ordered)

    def get(self, message_id: str) -> Optional[MessageSnapshot]:
        return self._by_id.get(message_id)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    @property
    def unread_count(self) -> int:
        return sum(
            1
            for message in self._ordered
            if message.sender_id == self.peer_id
            and message.delivery_state is not DeliveryState.SEEN
            and not message.deleted_for_everyone
        )

    @property
    def last_message(self) -> Optional[MessageSnapshot]:
        return self._ordered[-1] if self._ordered else None

    # -- event application ---------------------------------------------------

    def load(self, messages: Iterable[MessageSnapshot]) -> None:
        """Seed from a fetch; fetched messages never trigger incoming hooks."""
        for message in messages:
            if message.id in self._by_id:
                self._by_id[message.id] = merge_message(self._by_id[message.id], message)
            elif message.id not in self._removed:
                self._by_id[message.id] = message
        self._resort()
        self._schedule_receipts()

    def apply(self, event: ConversationEvent) -> bool:
        """Apply one event; returns whether the visible state changed."""
        if self._closed:
            return False
        if isinstance(event, MessageInserted):
            return self._insert(event.message, announce=True)
        if isinstance(event, MessageUpdated):
            return self._update(event.message)
        if isinstance(event, MessageDeleted):
            return self._delete(event.message_id)
        if isinstance(event, BulkSeenUpdate):
            return self._mark_seen(event.message_ids)
        raise TypeError(f"Unsupported conversation event: {type(event).__name__}")

    def _insert(self, message: MessageSnapshot, announce: bool) -> bool:
        if message.id in self._by_id or message.id in self._removed:
            return False

        self._by_id[message.id] = message
        self._resort()

        if message.sender_id == self.peer_id:
            if announce and self.on_incoming is not None and not message.deleted_for_everyone:
                try:
                    self.on_incoming(message)
                except Exception:
                    logger.exception(
                        "Incoming message hook failed",
                        extra={"extra_data": {"message_id": message.id}},
                    )
            self._schedule_receipts()
        return True

    def _update(self, message: MessageSnapshot) -> bool:
        existing = self._by_id.get(message.id)
        if existing is None:
            # Update overtook its insert on the other channel.
            return self._insert(message, announce=False)

        merged = merge_message(existing, message)
        if merged == existing:
            return False
        self._by_id[message.id] = merged
        self._resort()
        return True

    def _delete(self, message_id: str) -> bool:
        self._removed.add(message_id)
        if self._by_id.pop(message_id, None) is None:
            return False
        self._resort()
        return True

    def _mark_seen(self, message_ids: Iterable[str]) -> bool:
        return self._advance(message_ids, DeliveryState.SEEN)

    def _advance(self, message_ids: Iterable[str], state: DeliveryState) -> bool:
        changed = False
        for message_id in message_ids:
            existing = self._by_id.get(message_id)
            if existing is None:
                continue
            target = DeliveryState.most_advanced(existing.delivery_state, state)
            if target is existing.delivery_state:
                continue
            self._by_id[message_id] = existing.model_copy(update={"delivery_state": target})
            changed = True
        if changed:
            self._resort()
        return changed

    def _resort(self) -> None:
        self._ordered = sorted(self._by_id.values(), key=lambda message: message.sort_key)

    # -- receipts --------------------------------------------------------------

    def set_focused(self, focused: bool) -> None:
        gained = focused and not self.focused
        self.focused = focused
        if gained:
            self._schedule_receipts()

    def recheck(self) -> None:
        """Explicit retry point for receipts that failed or were deferred."""
        self._schedule_receipts()

    def pending_receipts(self) -> Tuple[List[str], DeliveryState]:
        """Peer messages that still need acknowledging, and the state to write."""
        target = DeliveryState.SEEN if self.focused else DeliveryState.DELIVERED
        ids = [
            message.id
            for message in self._ordered
            if message.sender_id == self.peer_id
            and message.receiver_id == self.self_id
            and message.delivery_state.rank < target.rank
        ]
        return ids, target

    def _schedule_receipts(self) -> None:
        if self.send_receipts is None or self._closed or self._timer is not None:
            return
        if not self.pending_receipts()[0]:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, receipts deferred until recheck")
            return
        self._timer = loop.call_later(self.debounce_seconds, self._start_flush)

    def _start_flush(self) -> None:
        self._timer = None
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_again = True
            return
        self._flush_task = asyncio.ensure_future(self.flush_receipts())

    async def flush_receipts(self) -> List[str]:
        """Write pending receipts now; returns the ids acknowledged."""
        ids, state = self.pending_receipts()
        if not ids or self.send_receipts is None:
            return []

        fields = {"peer_id": self.peer_id, "count": len(ids), "state": state.value}
        try:
            await self.send_receipts(ids, state)
        except Exception as e:
            self.last_receipt_error = e
            logger.warning(
                "Receipt write failed, retrying on next event",
                exc_info=True,
                extra={"extra_data": fields},
            )
            written: List[str] = []
        else:
            self.last_receipt_error = None
            self._advance(ids, state)
            logger.debug("Receipts written", extra={"extra_data": fields})
            written = ids

        if self._flush_again:
            # Events arrived while the write was in flight.
            self._flush_again = False
            self._schedule_receipts()
        return written

    def close(self) -> None:
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
