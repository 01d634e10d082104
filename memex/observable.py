"""
In-memory observable state.

The single source of truth for everything the UI shows. Values are
addressed by tuple keys whose first element is the namespace
(``("entities", id)``, ``("artifacts.summary", entity_id, sub_key)``).

Every write replaces the whole value and synchronously notifies:
- subscribers of that exact key
- predicate subscribers whose predicate matches the key
- computed views that depend on the key

Writers are serialized per key; reads never take a lock. Stored values
must be immutable (frozen dataclasses, tuples, frozensets) so a reader
always sees a consistent snapshot.
"""

import logging
import threading
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)

Key = tuple
Callback = Callable[[Key, Any], None]
Predicate = Callable[[Key], bool]

_MISSING = object()


def namespace_predicate(namespace: str) -> Predicate:
    """Predicate matching every key in a namespace."""
    def matches(key: Key) -> bool:
        return bool(key) and key[0] == namespace
    return matches


class ObservableStore:
    """
    Typed in-memory collections with subscribe/notify.

    Thread-safe for concurrent readers and writers. Two writes to the
    same key never interleave; writes to different keys proceed in
    parallel.
    """

    def __init__(self):
        self._values: dict[Key, Any] = {}
        self._key_subscribers: dict[Key, list[Callback]] = {}
        self._predicate_subscribers: list[tuple[Predicate, Callback]] = []
        self._subscribers_lock = threading.Lock()
        self._key_locks: dict[Key, threading.RLock] = {}
        self._key_locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: Key, default: Any = None) -> Any:
        """Current value for key, or default when absent."""
        return self._values.get(key, default)

    def __contains__(self, key: Key) -> bool:
        return key in self._values

    def items(self, namespace: str) -> list[tuple[Key, Any]]:
        """All (key, value) pairs in a namespace, as a snapshot."""
        snapshot = self._values.copy()
        return [(k, v) for k, v in snapshot.items() if k and k[0] == namespace]

    def values(self, namespace: str) -> list[Any]:
        """All values in a namespace, as a snapshot."""
        return [v for _, v in self.items(namespace)]

    def keys(self, namespace: str) -> list[Key]:
        return [k for k, _ in self.items(namespace)]

    def snapshot(self, namespace: str) -> dict[Key, Any]:
        """Point-in-time copy of a namespace, safe to iterate while writers run."""
        return dict(self.items(namespace))

    def count(self, namespace: str) -> int:
        return len(self.items(namespace))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def key_lock(self, key: Key) -> threading.RLock:
        """The writer lock for a key.

        Hold it to make a read-modify-write sequence atomic with
        respect to other writers of the same key.
        """
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._key_locks[key] = lock
            return lock

    def set(self, key: Key, value: Any) -> Any:
        """
        Replace the value at key and notify subscribers.

        Returns:
            The previous value, or None if the key was absent
        """
        if value is None:
            raise ValueError("Use delete() to remove a key")
        with self.key_lock(key):
            previous = self._values.get(key)
            self._values[key] = value
            self._notify(key, value)
        return previous

    def delete(self, key: Key) -> Any:
        """
        Remove key and notify subscribers with ``None``.

        Returns:
            The removed value, or None if the key was absent
        """
        with self.key_lock(key):
            previous = self._values.pop(key, _MISSING)
            if previous is _MISSING:
                return None
            self._notify(key, None)
        return previous

    def update(self, key: Key, fn: Callable[[Any], Any]) -> tuple[Any, Any]:
        """
        Atomically replace the value at key with ``fn(current)``.

        ``fn`` receives None when the key is absent and may return None
        to delete it.

        Returns:
            (previous, new) values
        """
        with self.key_lock(key):
            previous = self._values.get(key)
            new = fn(previous)
            if new is None:
                self.delete(key)
            else:
                self.set(key, new)
            return previous, new

    def rollback(self, key: Key, previous: Any) -> None:
        """Re-apply a previous snapshot (None means absent) and re-notify."""
        if previous is None:
            self.delete(key)
        else:
            self.set(key, previous)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        target: Union[Key, str, Predicate],
        callback: Callback,
    ) -> Callable[[], None]:
        """
        Subscribe to changes.

        Args:
            target: An exact key (tuple), a namespace name (str), or a
                predicate over keys
            callback: Called as ``callback(key, value)`` after each write;
                value is None when the key was deleted

        Returns:
            A function that removes the subscription (idempotent)
        """
        if isinstance(target, tuple):
            with self._subscribers_lock:
                self._key_subscribers.setdefault(target, []).append(callback)

            def unsubscribe() -> None:
                with self._subscribers_lock:
                    subs = self._key_subscribers.get(target, [])
                    if callback in subs:
                        subs.remove(callback)
                    if not subs:
                        self._key_subscribers.pop(target, None)
            return unsubscribe

        predicate = namespace_predicate(target) if isinstance(target, str) else target
        entry = (predicate, callback)
        with self._subscribers_lock:
            self._predicate_subscribers.append(entry)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if entry in self._predicate_subscribers:
                    self._predicate_subscribers.remove(entry)
        return unsubscribe

    def computed(
        self,
        compute: Callable[[], Any],
        depends_on: Union[Key, str, Predicate, list],
    ) -> "ComputedView":
        """Create a derived value recomputed whenever a dependency changes."""
        return ComputedView(self, compute, depends_on)

    def _notify(self, key: Key, value: Any) -> None:
        with self._subscribers_lock:
            callbacks = list(self._key_subscribers.get(key, ()))
            callbacks.extend(
                cb for predicate, cb in self._predicate_subscribers if predicate(key)
            )
        for callback in callbacks:
            try:
                callback(key, value)
            except Exception as e:
                # One broken subscriber must not block the write or the others
                logger.warning("Subscriber failed for %s: %s", key, e, exc_info=True)

    def close(self) -> None:
        """Drop all subscribers."""
        with self._subscribers_lock:
            self._key_subscribers.clear()
            self._predicate_subscribers.clear()


class ComputedView:
    """
    A value derived from store contents.

    Recomputed synchronously when any dependency changes, then pushed to
    the view's own subscribers as ``callback(value)``.
    """

    def __init__(
        self,
        store: ObservableStore,
        compute: Callable[[], Any],
        depends_on: Union[Key, str, Predicate, list],
    ):
        self._compute = compute
        self._lock = threading.RLock()
        self._subscribers: list[Callable[[Any], None]] = []
        self._value = compute()
        targets = depends_on if isinstance(depends_on, list) else [depends_on]
        self._unsubscribers = [store.subscribe(t, self._on_change) for t in targets]

    def get(self) -> Any:
        return self._value

    def refresh(self) -> Any:
        """Recompute now and notify subscribers."""
        with self._lock:
            self._value = self._compute()
            value = self._value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(value)
            except Exception as e:
                logger.warning("View subscriber failed: %s", e, exc_info=True)
        return value

    def _on_change(self, key: Key, value: Any) -> None:
        self.refresh()

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def close(self) -> None:
        """Stop tracking dependencies."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        with self._lock:
            self._subscribers.clear()
