"""Observable containers

Thread-safe value and list containers that notify subscribers after each
mutation. Subscribers are called on the mutating thread, after the new state
is visible to every reader and outside the container lock. A failing
subscriber is logged and never interrupts the others.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _notify(subscribers: Iterable[Callable], *args) -> None:
    for callback in subscribers:
        try:
            callback(*args)
        except Exception as e:
            name = getattr(callback, "__name__", repr(callback))
            logger.error(f"Subscriber error ({name}): {e}", exc_info=True)


class ObservableValue(Generic[T]):
    """A value cell notifying subscribers with (old_value, new_value) on change"""

    def __init__(self, value: Optional[T] = None):
        self._value = value
        self._lock = threading.RLock()
        self._subscribers: List[Callable[[Optional[T], Optional[T]], None]] = []

    def get(self) -> Optional[T]:
        with self._lock:
            return self._value

    def set(self, value: Optional[T]) -> None:
        """Set the value. Subscribers are only notified if it differs from the current one"""
        with self._lock:
            old_value = self._value
            if old_value == value:
                return
            self._value = value
            subscribers = list(self._subscribers)
        _notify(subscribers, old_value, value)

    def subscribe(self, callback: Callable[[Optional[T], Optional[T]], None]) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def read_only(self) -> "ReadOnlyObservableValue[T]":
        return ReadOnlyObservableValue(self)

    def __repr__(self) -> str:
        return f"ObservableValue({self.get()!r})"


class ReadOnlyObservableValue(Generic[T]):
    """A view of an observable value without the setter"""

    def __init__(self, source: ObservableValue[T]):
        self._source = source

    def get(self) -> Optional[T]:
        return self._source.get()

    def subscribe(self, callback: Callable[[Optional[T], Optional[T]], None]) -> None:
        self._source.subscribe(callback)

    def unsubscribe(self, callback: Callable) -> None:
        self._source.unsubscribe(callback)

    def __repr__(self) -> str:
        return f"ReadOnlyObservableValue({self.get()!r})"


@dataclass(frozen=True)
class ListChange(Generic[T]):
    """Items added to and removed from an observable list by one mutation"""
    added: Tuple[T, ...] = field(default_factory=tuple)
    removed: Tuple[T, ...] = field(default_factory=tuple)


class ObservableList(Generic[T]):
    """A list notifying subscribers with a ListChange after each mutation"""

    def __init__(self, items: Optional[Iterable[T]] = None):
        self._items: List[T] = list(items) if items is not None else []
        self._lock = threading.RLock()
        self._subscribers: List[Callable[[ListChange[T]], None]] = []

    def snapshot(self) -> List[T]:
        """Get a copy of the current items"""
        with self._lock:
            return list(self._items)

    def add(self, item: T) -> None:
        self.add_all([item])

    def add_all(self, items: Iterable[T]) -> None:
        items = tuple(items)
        if not items:
            return
        with self._lock:
            self._items.extend(items)
            subscribers = list(self._subscribers)
        _notify(subscribers, ListChange(added=items))

    def remove(self, item: T) -> bool:
        """Remove the first occurrence of an item. Returns whether it was present"""
        return bool(self.remove_all([item]))

    def remove_all(self, items: Iterable[T]) -> List[T]:
        """Remove the first occurrence of each given item. Returns the removed items"""
        removed = []
        with self._lock:
            for item in items:
                if item in self._items:
                    self._items.remove(item)
                    removed.append(item)
            subscribers = list(self._subscribers)
        if removed:
            _notify(subscribers, ListChange(removed=tuple(removed)))
        return removed

    def set_all(self, items: Iterable[T]) -> None:
        """Replace the whole content"""
        items = list(items)
        with self._lock:
            removed = tuple(self._items)
            self._items = items
            subscribers = list(self._subscribers)
        if removed or items:
            _notify(subscribers, ListChange(added=tuple(items), removed=removed))

    def clear(self) -> None:
        self.set_all([])

    def subscribe(self, callback: Callable[[ListChange[T]], None]) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def read_only(self) -> "ReadOnlyObservableList[T]":
        return ReadOnlyObservableList(self)

    def __contains__(self, item: object) -> bool:
        with self._lock:
            return item in self._items

    def __iter__(self) -> Iterator[T]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __repr__(self) -> str:
        return f"ObservableList({self.snapshot()!r})"


class ReadOnlyObservableList(Generic[T]):
    """A view of an observable list without the mutators"""

    def __init__(self, source: ObservableList[T]):
        self._source = source

    def snapshot(self) -> List[T]:
        return self._source.snapshot()

    def subscribe(self, callback: Callable[[ListChange[T]], None]) -> None:
        self._source.subscribe(callback)

    def unsubscribe(self, callback: Callable) -> None:
        self._source.unsubscribe(callback)

    def __contains__(self, item: object) -> bool:
        return item in self._source

    def __iter__(self) -> Iterator[T]:
        return iter(self._source)

    def __len__(self) -> int:
        return len(self._source)

    def __repr__(self) -> str:
        return f"ReadOnlyObservableList({self.snapshot()!r})"
