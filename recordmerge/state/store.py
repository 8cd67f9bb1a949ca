"""
Session store: the single writer of a session's StoreState.

Consumers read snapshots through get_state()/get_section() and change
state only through dispatch(). Change notifications are throttled on the
trailing edge: a burst of dispatches inside one window reaches each
interested listener once, with the latest state. The same notifications
are broadcast on the message bus so other stores sharing the bus follow
along; a store ignores messages it published itself.
"""

import logging
from dataclasses import fields, replace
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..core.errors import ErrorLevel, ErrorRecord, handle_error
from ..core.models import DraftJob
from ..messaging.bus import MessageBus, new_instance_id
from ..messaging.messages import ErrorOccurred, Message, StoreSectionUpdated, StoreUpdated
from ..utils.config import EngineConfig
from .actions import ActionType, section_for
from .drafts import DraftStorage, MemoryDraftStorage
from .reducer import reduce, stamp_cache
from .state import StoreState, initial_state
from .throttle import AsyncioScheduler, Scheduler, TrailingThrottle

logger = logging.getLogger(__name__)

Listener = Callable[[StoreState, StoreState], None]

SECTIONS = frozenset(f.name for f in fields(StoreState))


class SessionStore:
    """Single source of truth for one session."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        scheduler: Optional[Scheduler] = None,
        bus: Optional[MessageBus] = None,
        draft_storage: Optional[DraftStorage] = None,
        instance_id: Optional[str] = None
    ):
        """
        Initialize the store.

        Args:
            config: Engine configuration
            scheduler: Clock and timer source for throttling and cache ages
            bus: Message bus shared with other stores, if any
            draft_storage: Where the draft job slot is persisted
            instance_id: Origin id stamped on broadcast messages
        """
        self.config = config or EngineConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.bus = bus
        self.draft_storage = draft_storage or MemoryDraftStorage()
        self.instance_id = instance_id or new_instance_id()

        self._state = initial_state(self.config)
        self._notified_state = self._state
        self._listeners: List[Tuple[int, Optional[FrozenSet[str]], Listener]] = []
        self._next_token = 0

        # None in either set stands for "the whole state"
        self._dirty: Set[Optional[str]] = set()
        self._outgoing: Set[Optional[str]] = set()
        self._throttle = TrailingThrottle(
            self.scheduler, self.config.throttle_window, self._deliver
        )

        self.dropped_messages = 0
        self._bus_unsubscribe = None
        if bus is not None:
            self._bus_unsubscribe = bus.subscribe(
                self._on_message, (StoreUpdated, StoreSectionUpdated)
            )

    # Reading

    def get_state(self) -> StoreState:
        return self._state

    def get_section(self, name: str) -> Any:
        if name not in SECTIONS:
            raise KeyError(f"Unknown state section: {name}")
        return getattr(self._state, name)

    # Writing

    def dispatch(self, action: ActionType, payload: Any = None) -> StoreState:
        """Apply an action and schedule notification of its section.

        A failing transition resets the store to its default state with the
        failure recorded, instead of raising to the caller.

        Returns:
            The new state
        """
        previous = self._state
        try:
            state = reduce(previous, action, payload, self.config)
            state = stamp_cache(state, action, self.scheduler.now())
            self._state = state
            if state != previous:
                self._mark(section_for(action))
        except Exception as e:
            logger.error(f"Store transition {action.value} failed, resetting state", exc_info=True)
            record = handle_error("SessionStore", f"dispatch {action.value}", e, ErrorLevel.CRITICAL)
            self._state = replace(initial_state(self.config), errors=(record,))
            try:
                self._mark(None)
            except Exception:
                logger.error("Store notification could not be scheduled", exc_info=True)
            return self._state

        self._persist_draft(action, payload)
        return state

    def _persist_draft(self, action: ActionType, payload: Any) -> None:
        try:
            if action == ActionType.SAVE_DRAFT_JOB and payload is not None:
                self.draft_storage.write(payload)
            elif action == ActionType.CLEAR_DRAFT_JOB:
                self.draft_storage.clear()
        except Exception as e:
            logger.warning(f"Draft persistence failed: {e}")

    def load_draft(self) -> Optional[DraftJob]:
        """Restore the draft slot from storage into the state."""
        try:
            draft = self.draft_storage.read()
        except Exception as e:
            logger.warning(f"Draft restore failed: {e}")
            draft = None
        self.dispatch(ActionType.LOAD_DRAFT_JOB, draft)
        return draft

    def report_error(
        self,
        source: str,
        operation: str,
        exc: BaseException,
        level: Optional[ErrorLevel] = None
    ) -> ErrorRecord:
        """Normalize an error, keep it in the bounded list and announce it."""
        record = handle_error(source, operation, exc, level)
        self.dispatch(ActionType.ADD_ERROR, record)
        if self.bus is not None:
            self.bus.publish(ErrorOccurred(error=record), source=self.instance_id)
        return record

    # Cache

    def cache_timeout(self, section: str) -> float:
        return self._state.cache_section(section).timeout(self.config)

    def peek_cache(self, section: str) -> bool:
        """Validity of a cache section without counting a lookup."""
        return self._state.cache_section(section).is_valid(self.scheduler.now(), self.config)

    def is_cache_valid(self, section: str) -> bool:
        """Check a cache section and record the lookup as a hit or miss.

        Lookup bookkeeping is not a state change listeners care about, so
        it is applied without notification.
        """
        cache_section = self._state.cache_section(section)
        valid = cache_section.is_valid(self.scheduler.now(), self.config)
        self._state = self._state.with_cache(cache_section.observed(valid))
        return valid

    def invalidate(self, section: Optional[str] = None) -> None:
        self.dispatch(ActionType.INVALIDATE_CACHE, section)

    # Notification

    def subscribe(
        self,
        listener: Listener,
        sections: Optional[Iterable[str]] = None
    ) -> Callable[[], None]:
        """Register a listener called as listener(state, previous_state).

        Args:
            listener: Callback
            sections: Only notify when one of these sections changed;
                None listens to every change

        Returns:
            Function that removes the listener
        """
        wanted = frozenset(sections) if sections is not None else None
        if wanted is not None and not wanted <= SECTIONS:
            raise KeyError(f"Unknown state sections: {sorted(wanted - SECTIONS)}")

        token = self._next_token
        self._next_token += 1
        self._listeners.append((token, wanted, listener))

        def unsubscribe() -> None:
            self._listeners = [entry for entry in self._listeners if entry[0] != token]

        return unsubscribe

    def _mark(self, section: Optional[str], broadcast: bool = True) -> None:
        self._dirty.add(section)
        if broadcast:
            self._outgoing.add(section)
        self._throttle.trigger()

    def flush(self) -> None:
        """Deliver pending notifications now instead of at the window's end."""
        self._throttle.flush()

    def _deliver(self) -> None:
        state = self._state
        previous = self._notified_state
        self._notified_state = state

        dirty, self._dirty = self._dirty, set()
        outgoing, self._outgoing = self._outgoing, set()
        whole = None in dirty

        for _, wanted, listener in list(self._listeners):
            if wanted is not None and not whole and not (wanted & dirty):
                continue
            try:
                listener(state, previous)
            except Exception:
                logger.error("Store listener failed", exc_info=True)

        if self.bus is None or not outgoing:
            return
        if None in outgoing:
            self.bus.publish(StoreUpdated(state=state), source=self.instance_id)
            return
        for section in sorted(outgoing):
            self.bus.publish(
                StoreSectionUpdated(section=section, value=getattr(state, section)),
                source=self.instance_id,
            )

    # Cross-instance sync

    def _on_message(self, message: Message) -> None:
        if message.source == self.instance_id:
            self.dropped_messages += 1
            return

        payload = message.payload
        if isinstance(payload, StoreSectionUpdated):
            if payload.section not in SECTIONS:
                logger.warning(f"Ignoring update for unknown section {payload.section}")
                return
            self._state = replace(self._state, **{payload.section: payload.value})
            self._mark(payload.section, broadcast=False)
        elif isinstance(payload, StoreUpdated):
            self._state = payload.state
            self._mark(None, broadcast=False)

    def dispose(self) -> None:
        """Deliver anything pending and detach from the bus."""
        self._throttle.flush()
        if self._bus_unsubscribe is not None:
            self._bus_unsubscribe()
            self._bus_unsubscribe = None
