"""
Replay-current status streams

A StatusStream holds the latest value and a list of subscribers. New
subscribers immediately receive the current value, then every later change.
Callbacks run synchronously inside emit(); async consumers can iterate the
stream instead.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Generic, List, Optional, TypeVar

from utils.logger import logger

T = TypeVar("T")

ValueCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]

_CLOSED = object()


class _ErrorEvent:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


class StreamSubscription:
    """Handle returned by StatusStream.subscribe()"""

    def __init__(self, stream: 'StatusStream', on_value: ValueCallback,
                 on_error: Optional[ErrorCallback]):
        self._stream = stream
        self.on_value = on_value
        self.on_error = on_error
        self.cancelled = False

    def cancel(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            self._stream._remove(self)


class StatusStream(Generic[T]):
    """State holder plus subscriber list with replay of the current value"""

    def __init__(self, initial: Optional[T] = None, name: str = "stream"):
        self.name = name
        self._value: Optional[T] = initial
        self._has_value = initial is not None
        self._subscriptions: List[StreamSubscription] = []
        self._queues: List[asyncio.Queue] = []
        self._closed = False

    @property
    def value(self) -> Optional[T]:
        """Latest emitted value (None before the first emission)"""
        return self._value

    @property
    def has_value(self) -> bool:
        return self._has_value

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def emit(self, value: T) -> None:
        """Store value and forward it to every subscriber; no-op once closed"""
        if self._closed:
            logger.debug(f"Ignoring emission into closed {self.name}")
            return
        self._value = value
        self._has_value = True
        for subscription in list(self._subscriptions):
            if subscription.cancelled:
                continue
            try:
                subscription.on_value(value)
            except Exception as e:
                logger.error(f"Subscriber of {self.name} failed: {e}")
        for queue in self._queues:
            queue.put_nowait(value)

    def emit_error(self, error: BaseException) -> None:
        """Forward an error to subscribers that handle errors; the value is kept"""
        if self._closed:
            return
        for subscription in list(self._subscriptions):
            if subscription.cancelled or subscription.on_error is None:
                continue
            try:
                subscription.on_error(error)
            except Exception as e:
                logger.error(f"Error handler of {self.name} failed: {e}")
        for queue in self._queues:
            queue.put_nowait(_ErrorEvent(error))

    def subscribe(self, on_value: ValueCallback,
                  on_error: Optional[ErrorCallback] = None) -> StreamSubscription:
        """Register callbacks; the current value (if any) is delivered at once"""
        subscription = StreamSubscription(self, on_value, on_error)
        if self._closed:
            subscription.cancelled = True
            return subscription
        self._subscriptions.append(subscription)
        if self._has_value:
            try:
                on_value(self._value)
            except Exception as e:
                logger.error(f"Subscriber of {self.name} failed on replay: {e}")
        return subscription

    def _remove(self, subscription: StreamSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def close(self) -> None:
        """Drop all subscribers and end async iterators"""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.cancelled = True
        self._subscriptions.clear()
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[T]:
        queue: asyncio.Queue = asyncio.Queue()
        if self._has_value:
            queue.put_nowait(self._value)
        if self._closed:
            queue.put_nowait(_CLOSED)
        self._queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                if isinstance(item, _ErrorEvent):
                    raise item.error
                yield item
        finally:
            self._queues.remove(queue)
