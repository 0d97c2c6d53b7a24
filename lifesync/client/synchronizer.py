"""
Client-side state synchronizer for LifeSync.

reconcile() applies one incoming change to local state with a named
strategy. It is pure and never raises: malformed input leaves the prior
state untouched and is reported through the caller's error channel.

RealtimeDataStore keeps the local task, tag and project collections and
maps every incoming event kind to a strategy.
"""

from collections import deque
from collections.abc import Callable, Mapping, Sequence
from enum import StrEnum
from typing import Any, assert_never

from ..exceptions import ReconciliationError
from ..realtime.envelope import EventEnvelope
from ..realtime.event_types import EventType
from ..structured_logging.enhanced_logging_config import get_logger
from .events import EventEmitter

logger = get_logger(__name__)

State = list[dict[str, Any]] | dict[str, Any]
ErrorChannel = Callable[[ReconciliationError], Any]

# Event metadata that is not part of the entity itself
EVENT_META_FIELDS = frozenset({"previous_state", "changes", "previous_assignee", "assignment_change"})


class MergeStrategy(StrEnum):
    REPLACE = "replace"
    MERGE = "merge"
    UPSERT = "upsert"
    REMOVE = "remove"


def _identity(item: Any) -> Any:
    if isinstance(item, Mapping):
        identity = item.get("id")
        if identity is None or identity == "":
            raise ValueError("item has no id")
        return identity
    if isinstance(item, str | int):
        return item
    raise ValueError(f"cannot take identity of {type(item).__name__}")


def _as_items(incoming: Any) -> list[Any]:
    if isinstance(incoming, Mapping):
        return [incoming]
    if isinstance(incoming, Sequence) and not isinstance(incoming, str | bytes):
        return list(incoming)
    raise ValueError(f"expected an item or a list of items, got {type(incoming).__name__}")


def _replace(current: State, incoming: Any) -> State:
    if isinstance(current, list):
        return [dict(item) for item in _as_items(incoming)]
    if not isinstance(incoming, Mapping):
        raise ValueError("replace of a mapping state needs a mapping")
    return dict(incoming)


def _merge(current: State, incoming: Any) -> State:
    if isinstance(current, list):
        return [*current, *(dict(item) for item in _as_items(incoming))]
    if not isinstance(incoming, Mapping):
        raise ValueError("merge into a mapping state needs a mapping")
    return {**current, **incoming}


def _upsert(current: State, incoming: Any) -> State:
    if not isinstance(current, list):
        raise ValueError("upsert needs a collection state")
    result = list(current)
    positions = {_identity(item): index for index, item in enumerate(result)}
    for item in _as_items(incoming):
        if not isinstance(item, Mapping):
            raise ValueError("upsert items must be mappings")
        identity = _identity(item)
        if identity in positions:
            result[positions[identity]] = dict(item)
        else:
            positions[identity] = len(result)
            result.append(dict(item))
    return result


def _remove(current: State, incoming: Any) -> State:
    if not isinstance(current, list):
        raise ValueError("remove needs a collection state")
    doomed = {_identity(item) for item in _as_items(incoming)}
    return [item for item in current if _identity(item) not in doomed]


_STRATEGIES: dict[MergeStrategy, Callable[[State, Any], State]] = {
    MergeStrategy.REPLACE: _replace,
    MergeStrategy.MERGE: _merge,
    MergeStrategy.UPSERT: _upsert,
    MergeStrategy.REMOVE: _remove,
}


def reconcile(
    current: State,
    incoming: Any,
    strategy: MergeStrategy | str,
    on_error: ErrorChannel | None = None,
) -> State:
    """
    Apply incoming to current with the given strategy.

    - replace: incoming supersedes current
    - merge: shallow merge for a mapping, concatenation for a collection
    - upsert: replace the entry with the same id, else append
    - remove: drop entries whose id is among the incoming ids

    Args:
        current: A list of entities or a mapping
        incoming: An entity, a list of entities, or (for remove) a list of ids
        strategy: MergeStrategy or its name
        on_error: Receives a ReconciliationError when the input is malformed

    Returns:
        The new state, or current unchanged when the input is malformed
    """
    try:
        apply = _STRATEGIES[MergeStrategy(strategy)]
        return apply(current, incoming)
    except (ValueError, TypeError, KeyError) as e:
        error = ReconciliationError(
            f"Could not reconcile incoming state: {e}",
            details={"strategy": str(strategy), "incoming_type": type(incoming).__name__},
        )
        if on_error is not None:
            on_error(error)
        return current


def _entity(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in EVENT_META_FIELDS}


class RealtimeDataStore(EventEmitter):
    """
    Local collections kept in step with the server.

    Local events: "changed" (collection name, items), "error" (ReconciliationError).
    """

    COLLECTIONS = ("tasks", "tags", "projects")

    def __init__(self, on_error: ErrorChannel | None = None) -> None:
        super().__init__()
        self.collections: dict[str, list[dict[str, Any]]] = {name: [] for name in self.COLLECTIONS}
        self.on_error = on_error
        self.errors: deque[ReconciliationError] = deque(maxlen=100)
        self._unreported: list[ReconciliationError] = []
        self.applied_events = 0

    @property
    def tasks(self) -> list[dict[str, Any]]:
        return self.collections["tasks"]

    @property
    def tags(self) -> list[dict[str, Any]]:
        return self.collections["tags"]

    @property
    def projects(self) -> list[dict[str, Any]]:
        return self.collections["projects"]

    def load(self, collection: str, items: list[dict[str, Any]]) -> None:
        """Seed a collection from a fetched snapshot."""
        self.collections[collection] = reconcile(
            self.collections[collection], items, MergeStrategy.REPLACE, self._report
        )

    def _report(self, error: ReconciliationError) -> None:
        self.errors.append(error)
        self._unreported.append(error)
        if self.on_error is not None:
            self.on_error(error)

    @staticmethod
    def route(event_type: EventType) -> tuple[str, MergeStrategy] | None:
        """Collection and strategy for an event kind; None for events that carry no entity state."""
        match event_type:
            case EventType.TASK_CREATED | EventType.TASK_UPDATED | EventType.TASK_ASSIGNED:
                return "tasks", MergeStrategy.UPSERT
            case EventType.TASK_DELETED:
                return "tasks", MergeStrategy.REMOVE
            case EventType.TAG_CREATED | EventType.TAG_UPDATED:
                return "tags", MergeStrategy.UPSERT
            case EventType.TAG_DELETED:
                return "tags", MergeStrategy.REMOVE
            case EventType.PROJECT_CREATED | EventType.PROJECT_UPDATED:
                return "projects", MergeStrategy.UPSERT
            case EventType.BULK_UPDATE:
                return "tasks", MergeStrategy.UPSERT
            case EventType.BULK_DELETE:
                return "tasks", MergeStrategy.REMOVE
            case (
                EventType.CONNECTION_ESTABLISHED
                | EventType.PONG
                | EventType.ERROR
                | EventType.RATE_LIMIT_EXCEEDED
                | EventType.SUBSCRIPTION_CONFIRMED
                | EventType.SUBSCRIPTION_ERROR
                | EventType.ROOM_DATA
                | EventType.ROOM_MEMBER_JOINED
                | EventType.ROOM_MEMBER_LEFT
                | EventType.PRESENCE_USER_JOINED
                | EventType.PRESENCE_USER_LEFT
                | EventType.PRESENCE_USER_UPDATED
                | EventType.PRESENCE_INITIAL_STATE
                | EventType.PRESENCE_SYNC
                | EventType.PRESENCE_HEARTBEAT
            ):
                return None
            case _:
                assert_never(event_type)

    def apply(self, envelope: EventEnvelope) -> str | None:
        """
        Reconcile one envelope into the local collections.

        Returns:
            Name of the collection that changed, or None
        """
        target = self.route(envelope.type)
        if target is None:
            return None
        collection, strategy = target

        if envelope.type in (EventType.BULK_UPDATE, EventType.BULK_DELETE):
            incoming: Any = envelope.payload.get("items")
        else:
            incoming = _entity(envelope.payload)

        current = self.collections[collection]
        updated = reconcile(current, incoming, strategy, self._report)
        if updated is current or updated == current:
            return None
        self.collections[collection] = updated
        self.applied_events += 1
        return collection

    async def handle_message(self, message: Mapping[str, Any]) -> None:
        """Connection "message" listener."""
        try:
            envelope = EventEnvelope.from_dict(message)
        except (KeyError, ValueError):
            logger.debug("Ignoring message with unknown type", message_type=message.get("type"))
            return
        collection = self.apply(envelope)
        if collection is not None:
            await self.emit("changed", collection, self.collections[collection])
        unreported, self._unreported = self._unreported, []
        for error in unreported:
            error.details["event_id"] = envelope.event_id
            await self.emit("error", error)
