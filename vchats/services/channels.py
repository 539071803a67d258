"""
The two delivery channels behind every conversation.

``BroadcastChannel`` is the low-latency, at-least-once transport: named
events fan out to whoever is listening right now, and nothing is kept. The
``ChangeFeed`` is the durable one: row-level ``INSERT``/``UPDATE``/``DELETE``
events for the tracked tables, published only after the owning SQLAlchemy
session commits.

Listeners are plain callables run synchronously on the emitting task. A
listener that raises is logged and skipped; the rest still run.
"""
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, sessionmaker

from vchats.core.logging import get_logger

logger = get_logger(__name__)

# Fast-channel event names
MESSAGE_RECEIVED = "message_received"
MESSAGE_UPDATED = "message_updated"
MESSAGES_SEEN = "messages_seen"
MESSAGE_DELETED = "message_deleted"

TRACKED_TABLES = frozenset({"messages", "message_deletions"})

_PENDING_KEY = "vchats.pending_changes"


class BroadcastChannel:
    """In-process named-event fan-out."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self._listeners: Dict[str, Dict[int, Callable[[Any], None]]] = defaultdict(dict)
        self._events_by_token: Dict[int, str] = {}
        self._tokens = itertools.count(1)

    def on(self, event_name: str, handler: Callable[[Any], None]) -> int:
        token = next(self._tokens)
        self._listeners[event_name][token] = handler
        self._events_by_token[token] = event_name
        return token

    def off(self, token: int) -> bool:
        event_name = self._events_by_token.pop(token, None)
        if event_name is None:
            return False
        self._listeners[event_name].pop(token, None)
        return True

    def listener_count(self, event_name: Optional[str] = None) -> int:
        if event_name is not None:
            return len(self._listeners.get(event_name, {}))
        return len(self._events_by_token)

    def emit(self, event_name: str, payload: Any) -> int:
        """Deliver ``payload`` to current listeners; returns how many ran."""
        if not self.connected:
            logger.debug(
                "Broadcast channel offline, dropping event",
                extra={"extra_data": {"event": event_name}},
            )
            return 0

        delivered = 0
        for handler in list(self._listeners.get(event_name, {}).values()):
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "Broadcast listener failed",
                    extra={"extra_data": {"event": event_name}},
                )
                continue
            delivered += 1
        return delivered


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # INSERT | UPDATE | DELETE
    old: Dict[str, Any] = field(default_factory=dict)
    new: Dict[str, Any] = field(default_factory=dict)


ChangeFilter = Callable[[ChangeEvent], bool]


class ChangeFeed:
    """Row-change subscriptions filtered by table and an optional predicate."""

    def __init__(self):
        self._subscriptions: Dict[int, Tuple[str, Optional[ChangeFilter], Callable[[ChangeEvent], None]]] = {}
        self._tokens = itertools.count(1)

    def subscribe(
        self,
        table: str,
        handler: Callable[[ChangeEvent], None],
        predicate: Optional[ChangeFilter] = None,
    ) -> int:
        token = next(self._tokens)
        self._subscriptions[token] = (table, predicate, handler)
        return token

    def unsubscribe(self, token: int) -> bool:
        return self._subscriptions.pop(token, None) is not None

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> int:
        delivered = 0
        for table, predicate, handler in list(self._subscriptions.values()):
            if table != change.table:
                continue
            try:
                if predicate is not None and not predicate(change):
                    continue
                handler(change)
            except Exception:
                logger.exception(
                    "Change feed listener failed",
                    extra={"extra_data": {"table": change.table, "event_type": change.event_type}},
                )
                continue
            delivered += 1
        return delivered


def _previous_values(obj) -> Dict[str, Any]:
    """Primary key plus the pre-flush value of every changed column."""
    state = inspect(obj)
    old: Dict[str, Any] = {}
    for column in state.mapper.primary_key:
        old[column.key] = getattr(obj, column.key)
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            old[attr.key] = history.deleted[0]
    return old


def _loaded_values(obj) -> Dict[str, Any]:
    state = inspect(obj)
    return {
        attr.key: state.dict[attr.key]
        for attr in state.mapper.column_attrs
        if attr.key in state.dict
    }


def _collect_changes(session: Session) -> List[ChangeEvent]:
    changes: List[ChangeEvent] = []
    for obj in session.new:
        table = getattr(obj, "__tablename__", None)
        if table in TRACKED_TABLES:
            changes.append(ChangeEvent(table, "INSERT", {}, obj.to_dict()))
    for obj in session.dirty:
        table = getattr(obj, "__tablename__", None)
        if table in TRACKED_TABLES and session.is_modified(obj, include_collections=False):
            changes.append(ChangeEvent(table, "UPDATE", _previous_values(obj), obj.to_dict()))
    for obj in session.deleted:
        table = getattr(obj, "__tablename__", None)
        if table in TRACKED_TABLES:
            changes.append(ChangeEvent(table, "DELETE", _loaded_values(obj), {}))
    return changes


def attach_change_feed(session_factory: sessionmaker, feed: ChangeFeed) -> None:
    """
    Publish row changes of sessions made by ``session_factory`` to ``feed``.

    Changes are gathered on every flush and released only on commit; a
    rollback discards them.
    """

    @event.listens_for(session_factory, "after_flush")
    def _gather(session, flush_context):
        session.info.setdefault(_PENDING_KEY, []).extend(_collect_changes(session))

    @event.listens_for(session_factory, "after_commit")
    def _release(session):
        for change in session.info.pop(_PENDING_KEY, []):
            feed.publish(change)

    @event.listens_for(session_factory, "after_soft_rollback")
    def _discard(session, previous_transaction):
        session.info.pop(_PENDING_KEY, None)
