"""
Tests for the per-conversation delivery state machine.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from vchats.models.message import TOMBSTONE_TEXT, DeliveryState
from vchats.schemas.events import (
    BulkSeenUpdate,
    MessageDeleted,
    MessageInserted,
    MessageSnapshot,
    MessageUpdated,
)
from vchats.services.delivery import ConversationState, merge_message

ME = "user-a"
PEER = "user-b"


def snapshot(message_id: str, sender: str = PEER, second: int = 0, **fields) -> MessageSnapshot:
    receiver = ME if sender == PEER else PEER
    data = {
        "id": message_id,
        "sender_id": sender,
        "receiver_id": receiver,
        "content": f"text of {message_id}",
        "created_at": datetime(2025, 1, 15, 10, 0, second, tzinfo=timezone.utc),
    }
    data.update(fields)
    return MessageSnapshot(**data)


class RecordingWriter:
    def __init__(self, failures: int = 0):
        self.calls = []
        self.failures = failures

    async def __call__(self, ids, state):
        self.calls.append((list(ids), state))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("store unavailable")


class TestMergeMessage:
    def test_delivery_state_never_regresses(self):
        seen = snapshot("m1", delivery_state=DeliveryState.SEEN)
        stale = snapshot("m1", delivery_state=DeliveryState.DELIVERED)
        assert merge_message(seen, stale).delivery_state is DeliveryState.SEEN
        assert merge_message(stale, seen).delivery_state is DeliveryState.SEEN

    def test_tombstone_is_sticky(self):
        deleted = snapshot("m1", deleted_for_everyone=True, content=TOMBSTONE_TEXT)
        stale = snapshot("m1", content="original text", reactions={ME: "👍"})

        merged = merge_message(deleted, stale)

        assert merged.deleted_for_everyone is True
        assert merged.content == TOMBSTONE_TEXT
        assert merged.reactions == {}

    def test_incoming_tombstone_replaces_content(self):
        live = snapshot("m1", kind="image", image_url="https://cdn.example/x.png")
        deleted = snapshot("m1", deleted_for_everyone=True, content="whatever")

        merged = merge_message(live, deleted)

        assert merged.content == TOMBSTONE_TEXT
        assert merged.image_url is None

    def test_reactions_merge_per_reactor_incoming_wins(self):
        existing = snapshot("m1", reactions={ME: "👍", PEER: "😂"})
        incoming = snapshot("m1", reactions={ME: "❤️"})

        merged = merge_message(existing, incoming)

        assert merged.reactions == {ME: "❤️", PEER: "😂"}


class TestConversationState:
    def test_insert_is_idempotent_across_channels(self):
        announced = []
        state = ConversationState(ME, PEER, on_incoming=announced.append)
        message = snapshot("m1")

        assert state.apply(MessageInserted(message=message)) is True
        assert state.apply(MessageInserted(message=message)) is False

        assert len(state) == 1
        assert [m.id for m in announced] == ["m1"]

    def test_display_order_follows_created_at_not_arrival(self):
        state = ConversationState(ME, PEER)
        state.apply(MessageInserted(message=snapshot("late", second=5)))
        state.apply(MessageInserted(message=snapshot("early", second=2)))
        state.apply(MessageInserted(message=snapshot("last", second=9)))

        assert [m.id for m in state.messages] == ["early", "late", "last"]
        assert state.last_message.id == "last"

    def test_equal_timestamps_order_by_id(self):
        state = ConversationState(ME, PEER)
        state.apply(MessageInserted(message=snapshot("b", second=1)))
        state.apply(MessageInserted(message=snapshot("a", second=1)))

        assert [m.id for m in state.messages] == ["a", "b"]

    def test_update_merges_and_reports_change(self):
        state = ConversationState(ME, PEER)
        state.apply(MessageInserted(message=snapshot("m1")))

        changed = state.apply(MessageUpdated(message=snapshot("m1", delivery_state=DeliveryState.DELIVERED)))
        unchanged = state.apply(MessageUpdated(message=snapshot("m1", delivery_state=DeliveryState.SENT)))

        assert changed is True
        assert unchanged is False
        assert state.get("m1").delivery_state is DeliveryState.DELIVERED

    def test_update_before_insert_adds_without_announcing(self):
        announced = []
        state = ConversationState(ME, PEER, on_incoming=announced.append)

        state.apply(MessageUpdated(message=snapshot("m1", reactions={ME: "👍"})))
        state.apply(MessageInserted(message=snapshot("m1")))

        assert "m1" in state
        assert state.get("m1").reactions == {ME: "👍"}
        assert announced == []

    def test_delete_removes_and_blocks_late_insert(self):
        state = ConversationState(ME, PEER)
        state.apply(MessageInserted(message=snapshot("m1")))

        assert state.apply(MessageDeleted(message_id="m1")) is True
        assert state.apply(MessageInserted(message=snapshot("m1"))) is False
        assert "m1" not in state

    def test_bulk_seen_advances_mixed_states_and_known_messages_only(self):
        state = ConversationState(ME, PEER)
        state.apply(MessageInserted(message=snapshot("m1", sender=ME, second=1)))
        state.apply(MessageInserted(message=snapshot("m2", sender=ME, second=2, delivery_state="delivered")))
        state.apply(MessageInserted(message=snapshot("m3", sender=ME, second=3)))

        assert [m.delivery_state for m in state.messages] == [
            DeliveryState.SENT,
            DeliveryState.DELIVERED,
            DeliveryState.SENT,
        ]

        changed = state.apply(BulkSeenUpdate(message_ids=["m1", "m2", "m3", "unknown"]))

        assert changed is True
        assert [m.delivery_state for m in state.messages] == [DeliveryState.SEEN] * 3
        assert "unknown" not in state
        assert state.apply(BulkSeenUpdate(message_ids=["m1"])) is False

    def test_own_messages_are_not_announced(self):
        announced = []
        state = ConversationState(ME, PEER, on_incoming=announced.append)
        state.apply(MessageInserted(message=snapshot("m1", sender=ME)))
        assert announced == []

    def test_failing_hook_does_not_break_apply(self):
        def hook(message):
            raise RuntimeError("boom")

        state = ConversationState(ME, PEER, on_incoming=hook)
        assert state.apply(MessageInserted(message=snapshot("m1"))) is True
        assert "m1" in state

    def test_load_does_not_announce(self):
        announced = []
        state = ConversationState(ME, PEER, on_incoming=announced.append)
        state.load([snapshot("m2", second=3), snapshot("m1", second=1)])

        assert [m.id for m in state.messages] == ["m1", "m2"]
        assert announced == []

    def test_unread_count_ignores_seen_and_tombstones(self):
        state = ConversationState(ME, PEER)
        state.load(
            [
                snapshot("m1", second=1),
                snapshot("m2", second=2, delivery_state=DeliveryState.SEEN),
                snapshot("m3", second=3, deleted_for_everyone=True),
                snapshot("m4", sender=ME, second=4),
            ]
        )
        assert state.unread_count == 1

    def test_pending_receipts_depend_on_focus(self):
        state = ConversationState(ME, PEER)
        state.load(
            [
                snapshot("m1", second=1),
                snapshot("m2", second=2, delivery_state=DeliveryState.DELIVERED),
                snapshot("m3", sender=ME, second=3),
            ]
        )

        assert state.pending_receipts() == (["m1"], DeliveryState.DELIVERED)
        state.focused = True
        assert state.pending_receipts() == (["m1", "m2"], DeliveryState.SEEN)

    def test_closed_state_ignores_events(self):
        state = ConversationState(ME, PEER)
        state.close()
        assert state.apply(MessageInserted(message=snapshot("m1"))) is False
        assert len(state) == 0

    def test_receipts_deferred_without_event_loop(self):
        writer = RecordingWriter()
        state = ConversationState(ME, PEER, send_receipts=writer)
        state.apply(MessageInserted(message=snapshot("m1")))
        assert writer.calls == []


class TestReceipts:
    @pytest.mark.asyncio
    async def test_burst_is_debounced_into_one_write(self):
        writer = RecordingWriter()
        state = ConversationState(ME, PEER, send_receipts=writer, debounce_seconds=0.01)
        state.set_focused(True)

        for second in range(3):
            state.apply(MessageInserted(message=snapshot(f"m{second}", second=second)))
        await asyncio.sleep(0.1)

        assert writer.calls == [(["m0", "m1", "m2"], DeliveryState.SEEN)]
        assert all(m.delivery_state is DeliveryState.SEEN for m in state.messages)

    @pytest.mark.asyncio
    async def test_unfocused_viewer_writes_delivered(self):
        writer = RecordingWriter()
        state = ConversationState(ME, PEER, send_receipts=writer, debounce_seconds=0.01)

        state.apply(MessageInserted(message=snapshot("m1")))
        await asyncio.sleep(0.1)

        assert writer.calls == [(["m1"], DeliveryState.DELIVERED)]
        assert state.get("m1").delivery_state is DeliveryState.DELIVERED

    @pytest.mark.asyncio
    async def test_failed_write_is_retried_on_next_event(self):
        writer = RecordingWriter(failures=1)
        state = ConversationState(ME, PEER, send_receipts=writer, debounce_seconds=0.01)
        state.set_focused(True)

        state.apply(MessageInserted(message=snapshot("m1", second=1)))
        await asyncio.sleep(0.1)

        assert isinstance(state.last_receipt_error, ConnectionError)
        assert state.get("m1").delivery_state is DeliveryState.SENT

        state.apply(MessageInserted(message=snapshot("m2", second=2)))
        await asyncio.sleep(0.1)

        assert writer.calls[-1] == (["m1", "m2"], DeliveryState.SEEN)
        assert state.last_receipt_error is None
        assert state.unread_count == 0

    @pytest.mark.asyncio
    async def test_gaining_focus_upgrades_to_seen(self):
        writer = RecordingWriter()
        state = ConversationState(ME, PEER, send_receipts=writer, debounce_seconds=0.01)
        state.load([snapshot("m1", delivery_state=DeliveryState.DELIVERED)])
        await asyncio.sleep(0.05)
        assert writer.calls == []

        state.set_focused(True)
        await asyncio.sleep(0.1)

        assert writer.calls == [(["m1"], DeliveryState.SEEN)]

    @pytest.mark.asyncio
    async def test_close_cancels_pending_write(self):
        writer = RecordingWriter()
        state = ConversationState(ME, PEER, send_receipts=writer, debounce_seconds=0.05)
        state.apply(MessageInserted(message=snapshot("m1")))
        state.close()
        await asyncio.sleep(0.1)
        assert writer.calls == []
