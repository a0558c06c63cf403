from __future__ import annotations

import threading
from typing import Generic, Iterable, Optional, TypeVar

T = TypeVar("T")


class WorkQueue(Generic[T]):
    """Shared LIFO work stack for a pool of walker threads.

    `get` blocks until an item is available and returns None once every
    pushed item has been marked done or the queue has been cancelled.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._items: list[T] = []
        self._in_flight = 0
        self._error: Optional[BaseException] = None
        self._cancelled = False

    def put_many(self, items: Iterable[T]) -> None:
        with self._cond:
            if self._cancelled:
                return
            self._items.extend(items)
            self._cond.notify_all()

    def get(self) -> Optional[T]:
        with self._cond:
            while True:
                if self._cancelled:
                    return None
                if self._items:
                    self._in_flight += 1
                    return self._items.pop()
                if self._in_flight == 0:
                    return None
                self._cond.wait()

    def task_done(self) -> None:
        with self._cond:
            self._in_flight -= 1
            if self._in_flight == 0 and not self._items:
                self._cond.notify_all()

    def cancel(self, error: BaseException) -> None:
        """Stop handing out work; the first error wins."""
        with self._cond:
            if self._error is None:
                self._error = error
            self._cancelled = True
            self._items.clear()
            self._cond.notify_all()

    @property
    def error(self) -> Optional[BaseException]:
        with self._cond:
            return self._error
