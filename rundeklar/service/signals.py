from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

from rundeklar.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class Signal(Generic[T]):
    """Fan-out of events to subscribers; keeps no value."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def emit(self, payload: T) -> None:
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as exc:
                logger.warning(
                    "signal_listener_failed",
                    signal=self.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class Observable(Signal[T]):
    """Last-writer-wins value; subscribers hear about every change."""

    def __init__(self, name: str, initial: T) -> None:
        super().__init__(name)
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T, *, force: bool = False) -> bool:
        """Store ``value``; notify only when it differs unless ``force``. Returns True if notified."""
        if value == self._value and not force:
            return False
        self._value = value
        self.emit(value)
        return True

    def subscribe(self, listener: Callable[[T], None], *, replay: bool = False) -> Unsubscribe:
        unsubscribe = super().subscribe(listener)
        if replay:
            listener(self._value)
        return unsubscribe

