from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from shared.log import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]

DELIMITER = ":"
WILDCARD = "*"
GLOBSTAR = "**"


def channel_matches(pattern: str, event: str, delimiter: str = DELIMITER) -> bool:
    """
    Return True if ``event`` is selected by the subscription ``pattern``.

    Both are split on ``delimiter``. In the pattern, ``*`` matches exactly one
    segment and ``**`` matches any number of segments (including none). Every
    other segment must be equal.

        channel_matches("foo:*", "foo:bar")        -> True
        channel_matches("foo:*", "foo:bar:baz")    -> False
        channel_matches("foo:**", "foo:bar:baz")   -> True
        channel_matches("metrics", "metrics")      -> True
    """
    if pattern == event:
        return True
    if WILDCARD not in pattern:
        return False
    return _match_segments(pattern.split(delimiter), event.split(delimiter))


def _match_segments(pattern: List[str], event: List[str]) -> bool:
    if not pattern:
        return not event
    head, rest = pattern[0], pattern[1:]
    if head == GLOBSTAR:
        # try every possible length for the globstar, shortest first
        return any(_match_segments(rest, event[i:]) for i in range(len(event) + 1))
    if not event:
        return False
    if head == WILDCARD or head == event[0]:
        return _match_segments(rest, event[1:])
    return False


class EventBus:
    """
    Maps event-name patterns to ordered listener lists.

    Listeners are plain callables. ``emit`` calls them synchronously in
    registration order and hands back whatever awaitables async listeners
    returned, so the caller decides whether to wait for them.
    """

    def __init__(self, delimiter: str = DELIMITER) -> None:
        self.delimiter = delimiter
        # (pattern, listener, once)
        self._listeners: List[Tuple[str, Listener, bool]] = []
        # called as listener(event, *args) for every emit
        self._any: List[Listener] = []

    def on(self, pattern: str, listener: Listener) -> Listener:
        self._listeners.append((pattern, listener, False))
        return listener

    def once(self, pattern: str, listener: Listener) -> Listener:
        self._listeners.append((pattern, listener, True))
        return listener

    def off(self, pattern: str, listener: Optional[Listener] = None) -> None:
        """Remove ``listener`` from ``pattern``, or every listener on ``pattern`` if omitted."""
        self._listeners = [
            entry for entry in self._listeners
            if not (entry[0] == pattern and (listener is None or entry[1] == listener))
        ]

    def on_any(self, listener: Listener) -> Listener:
        self._any.append(listener)
        return listener

    def off_any(self, listener: Optional[Listener] = None) -> None:
        self._any = [] if listener is None else [entry for entry in self._any if entry != listener]

    def remove_all_listeners(self) -> None:
        self._listeners.clear()
        self._any.clear()

    def listeners(self, event: str) -> List[Listener]:
        return [
            listener for pattern, listener, _ in self._listeners
            if channel_matches(pattern, event, self.delimiter)
        ]

    def emit(self, event: str, *args: Any) -> List[Awaitable[Any]]:
        matched = [
            entry for entry in self._listeners
            if channel_matches(entry[0], event, self.delimiter)
        ]
        if not matched and event == "error":
            logger.error("Unhandled error event: %s", args[0] if args else None)

        # drop one-shot listeners before calling them so re-entrant emits skip them
        spent = [entry for entry in matched if entry[2]]
        if spent:
            self._listeners = [entry for entry in self._listeners if entry not in spent]

        calls = [(pattern, listener, args) for pattern, listener, _ in matched]
        calls.extend(("*any*", listener, (event,) + args) for listener in list(self._any))

        pending: List[Awaitable[Any]] = []
        for pattern, listener, call_args in calls:
            try:
                result = listener(*call_args)
            except Exception:
                logger.exception("Listener for %r failed on event %r", pattern, event)
                continue
            if inspect.isawaitable(result):
                pending.append(result)
        return pending
