# Reconciliation.py
# Description: In-process publish/subscribe for "temporary ids became server ids" events.
#
# Imports
import inspect
from typing import Awaitable, Callable, Dict, List, Tuple, Union
#
# 3rd-Party Imports
from loguru import logger
from pydantic import BaseModel, ConfigDict
#
# Local Imports
#
########################################################################################################################
#
# Functions:


class UnsentMessagesSentEvent(BaseModel):
    """
    Published once per outbox flush of a channel that confirmed at least one message.
    Subscribers may see the same event more than once and must treat it idempotently.
    """
    model_config = ConfigDict(frozen=True)

    channel_id: str
    id_mappings: Tuple[Tuple[str, str], ...]

    @property
    def old_ids(self) -> List[str]:
        return [old_id for old_id, _ in self.id_mappings]

    @property
    def new_ids(self) -> List[str]:
        return [new_id for _, new_id in self.id_mappings]

    def as_dict(self) -> Dict[str, str]:
        return dict(self.id_mappings)


ReconciliationHandler = Callable[[UnsentMessagesSentEvent], Union[None, Awaitable[None]]]


class ReconciliationNotifier:
    """Typed replacement for broadcast intents: the sync layer publishes, indexes subscribe."""

    def __init__(self):
        self._subscribers: List[ReconciliationHandler] = []

    def subscribe(self, handler: ReconciliationHandler) -> Callable[[], None]:
        """Registers `handler` and returns a callable that unregisters it."""
        if handler not in self._subscribers:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: UnsentMessagesSentEvent) -> None:
        """
        Delivers `event` to every subscriber in registration order. A subscriber that
        raises is logged and does not stop delivery to the rest; it gets another
        chance on the next event for that channel.
        """
        logger.debug(f"Publishing reconciliation for channel {event.channel_id}: {list(event.id_mappings)}")
        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.opt(exception=e).error(
                    f"Reconciliation subscriber {getattr(handler, '__qualname__', handler)!r} failed "
                    f"for channel {event.channel_id}: {e}")

#
# End of Reconciliation.py
########################################################################################################################
