"""
In-process message bus.

Delivery is synchronous, session-local and at-most-once per subscriber;
nothing is persisted or replayed. A failing subscriber is logged and does
not stop delivery to the others.
"""

import logging
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Type

from .messages import Message, MessagePayload

logger = logging.getLogger(__name__)

Handler = Callable[[Message], None]


def new_instance_id(prefix: str = "store") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class MessageBus:
    """Routes messages to subscribers by payload class."""

    def __init__(self):
        self._subscriptions: List[Tuple[int, Optional[Tuple[Type, ...]], Handler]] = []
        self._next_token = 0
        self.published_count = 0

    def subscribe(
        self,
        handler: Handler,
        message_types: Optional[Sequence[Type]] = None
    ) -> Callable[[], None]:
        """Register a handler.

        Args:
            handler: Called with each matching Message
            message_types: Payload classes to receive; None receives everything

        Returns:
            Function that removes the subscription
        """
        token = self._next_token
        self._next_token += 1
        types = tuple(message_types) if message_types else None
        self._subscriptions.append((token, types, handler))

        def unsubscribe() -> None:
            self._subscriptions = [s for s in self._subscriptions if s[0] != token]

        return unsubscribe

    def publish(
        self,
        payload: MessagePayload,
        source: str,
        correlation_id: Optional[str] = None
    ) -> Message:
        """Deliver a payload to every matching subscriber.

        Returns:
            The delivered envelope
        """
        message = Message(payload=payload, source=source, correlation_id=correlation_id)
        self.published_count += 1
        logger.debug(f"Publishing {message.type} from {source}")

        # Snapshot so handlers may (un)subscribe while being called
        for _, types, handler in list(self._subscriptions):
            if types is not None and not isinstance(payload, types):
                continue
            try:
                handler(message)
            except Exception:
                logger.error(f"Subscriber failed handling {message.type}", exc_info=True)

        return message

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


class MessageRecorder:
    """Subscriber that keeps every message it sees, for inspection."""

    def __init__(self, bus: MessageBus, message_types: Optional[Sequence[Type]] = None):
        self.messages: List[Message] = []
        self._unsubscribe = bus.subscribe(self.messages.append, message_types)

    def payloads(self, payload_type: Optional[Type] = None) -> List[MessagePayload]:
        return [
            m.payload for m in self.messages
            if payload_type is None or isinstance(m.payload, payload_type)
        ]

    def by_correlation(self) -> Dict[str, List[Message]]:
        grouped: Dict[str, List[Message]] = {}
        for message in self.messages:
            if message.correlation_id:
                grouped.setdefault(message.correlation_id, []).append(message)
        return grouped

    def close(self) -> None:
        self._unsubscribe()
