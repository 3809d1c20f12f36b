# notification_bus.py
# In-process publish/subscribe registry keyed by event name.

from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple

from loguru import logger

ENTRY_UPDATED = "entryUpdated"

Handler = Callable[[Any], None]


class NotificationBus:
    """Delivers each published payload to the handlers registered for its event name.

    Handlers run synchronously, in registration order, on the publisher's
    context, so they must return quickly and defer long work.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Tuple[object, Handler]]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        token = object()
        self._handlers[event_name].append((token, handler))
        logger.debug(f"Subscribed handler to '{event_name}' ({len(self._handlers[event_name])} total).")

        def unsubscribe() -> None:
            subscriptions = self._handlers.get(event_name, [])
            for i, (t, _) in enumerate(subscriptions):
                if t is token:
                    del subscriptions[i]
                    logger.debug(f"Unsubscribed handler from '{event_name}'.")
                    return

        return unsubscribe

    def _is_registered(self, event_name: str, token: object) -> bool:
        return any(t is token for t, _ in self._handlers.get(event_name, []))

    def publish(self, event_name: str, payload: Any) -> int:
        """Calls every current handler for event_name. Returns how many were called."""
        snapshot = list(self._handlers.get(event_name, []))
        delivered = 0
        for token, handler in snapshot:
            # skip handlers removed by an earlier handler in this same publish
            if not self._is_registered(event_name, token):
                continue
            delivered += 1
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Handler for '{event_name}' raised; continuing delivery.")
        logger.debug(f"Published '{event_name}' to {delivered}/{len(snapshot)} handler(s).")
        return delivered

    def subscriber_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))
