"""Event subscriptions with multiple observers."""
from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any
from typing import Callable

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class Subscription:
    """Handle returned by [`EventHub.subscribe()`][colormatch.p2p.events.EventHub.subscribe].

    Calling the handle, or
    [`unsubscribe()`][colormatch.p2p.events.Subscription.unsubscribe],
    removes the callback. Unsubscribing more than once is a no-op.
    """

    def __init__(self, hub: EventHub, event: str, callback: Callback) -> None:
        self._hub = hub
        self._event = event
        self._callback = callback
        self._active = True

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(event={self._event!r}, '
            f'active={self._active})'
        )

    def __call__(self) -> None:
        self.unsubscribe()

    @property
    def active(self) -> bool:
        """If the callback is still subscribed."""
        return self._active

    @property
    def event(self) -> str:
        """Name of the event subscribed to."""
        return self._event

    def unsubscribe(self) -> None:
        """Remove the callback from the hub."""
        if self._active:
            self._hub._remove(self._event, self._callback)
            self._active = False


class EventHub:
    """Registry of observers keyed by event name.

    Callbacks may be plain functions or coroutine functions. Callbacks are
    invoked in subscription order and an exception raised by one callback is
    logged without preventing the remaining callbacks from running.

    Example:
        ```python
        hub = EventHub()
        subscription = hub.subscribe('message', print)
        await hub.emit('message', {'hello': 'world'})
        subscription.unsubscribe()
        ```
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, list[Callback]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callback) -> Subscription:
        """Subscribe a callback to an event.

        Args:
            event: Event name.
            callback: Callable invoked with the event arguments.

        Returns:
            Handle which unsubscribes the callback.
        """
        self._callbacks[event].append(callback)
        return Subscription(self, event, callback)

    def _remove(self, event: str, callback: Callback) -> None:
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def observers(self, event: str) -> int:
        """Number of callbacks subscribed to an event."""
        return len(self._callbacks.get(event, []))

    async def emit(self, event: str, *args: Any) -> None:
        """Invoke every callback subscribed to an event."""
        for callback in list(self._callbacks.get(event, [])):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f'Exception in callback for event {event!r}',
                )
