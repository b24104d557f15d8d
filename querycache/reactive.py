"""
Reactive cells - minimal observable values used by the cache, circuit breaker
and resources.

- Cell: holds a value, notifies subscribers when it changes (equality-gated)
- Computed: derived read-only value over one or more source cells
"""

from typing import Any, Callable, Generic, Iterable, TypeVar

from loguru import logger

T = TypeVar("T")

Listener = Callable[[T], None]
Unsubscribe = Callable[[], None]


def _default_equal(a: Any, b: Any) -> bool:
    if a is b:
        return True
    try:
        return bool(a == b)
    except Exception:
        return False


class Cell(Generic[T]):
    """
    A mutable value with change notification.

    Usage:
        count = Cell(0)
        unsubscribe = count.subscribe(lambda v: print(v))
        count.set(1)  # prints 1
        count.set(1)  # equal, no notification
    """

    def __init__(
        self,
        value: T,
        equal: Callable[[T, T], bool] | None = None,
    ):
        self._value = value
        self._equal = equal or _default_equal
        self._listeners: list[Listener[T]] = []

    def get(self) -> T:
        return self._value

    def __call__(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if self._equal(self._value, value):
            return
        self._value = value
        self._notify()

    def update(self, fn: Callable[[T], T]) -> None:
        self.set(fn(self._value))

    def subscribe(self, listener: Listener[T]) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        value = self._value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.exception(f"[Cell] listener failed: {e}")

    def __repr__(self) -> str:
        return f"Cell({self._value!r})"


class Computed(Generic[T]):
    """
    A derived value. Evaluated on every read; subscribers are notified with the
    freshly computed value whenever one of the sources changes.
    """

    def __init__(self, fn: Callable[[], T], sources: Iterable[Any] = ()):
        self._fn = fn
        self._sources = list(sources)

    def get(self) -> T:
        return self._fn()

    def __call__(self) -> T:
        return self._fn()

    def subscribe(self, listener: Listener[T]) -> Unsubscribe:
        unsubscribers = [
            source.subscribe(lambda *_: listener(self._fn()))
            for source in self._sources
        ]

        def unsubscribe() -> None:
            for unsub in unsubscribers:
                unsub()

        return unsubscribe
