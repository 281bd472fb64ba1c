"""
Current-value channels.

Subscribers always receive the whole latest value, never a diff. The async
``updates()`` iterator reads through a single-slot mailbox, so a slow
consumer skips intermediate values and only ever sees the newest one.
"""
import asyncio
from threading import RLock
from typing import Any, AsyncIterator, Callable, List, Sequence

from .logs import logger

_EMPTY = object()


class _Mailbox:
    def __init__(self):
        self._value = _EMPTY
        self._event = asyncio.Event()
        self._loop = asyncio.get_running_loop()

    def put(self, value):
        def _store():
            self._value = value
            self._event.set()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            _store()
        else:
            self._loop.call_soon_threadsafe(_store)

    async def get(self):
        await self._event.wait()
        self._event.clear()
        value, self._value = self._value, _EMPTY
        return value


class _Channel:
    def __init__(self):
        self._subscribers: List[Callable[[Any], None]] = []
        self._sub_lock = RLock()

    @property
    def value(self):
        raise NotImplementedError

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._sub_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._sub_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self):
        with self._sub_lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        value = self.value
        for cb in subscribers:
            try:
                cb(value)
            except Exception:
                logger.exception("snapshot subscriber failed")

    async def updates(self) -> AsyncIterator[Any]:
        box = _Mailbox()
        unsubscribe = self.subscribe(box.put)
        try:
            yield self.value
            while True:
                yield await box.get()
        finally:
            unsubscribe()


class Observable(_Channel):
    def __init__(self, initial):
        super().__init__()
        self._value = initial

    @property
    def value(self):
        return self._value

    def publish(self, value):
        self._value = value
        self._notify()


class View(_Channel):
    """Read-only value derived from one or more channels."""

    def __init__(self, sources: Sequence[_Channel], compute: Callable[[], Any]):
        super().__init__()
        self._compute = compute
        for src in sources:
            src.subscribe(lambda _value: self._notify())

    @property
    def value(self):
        return self._compute()
