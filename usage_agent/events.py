"""Observer/subscription support for state-change events."""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Tuple

logger = logging.getLogger(__name__)

Listener = Callable[..., None]


class EventEmitter:
    """Named-event callbacks with optional batching.

    Inside ``batch()`` emitted events are queued and delivered, in order, once
    the outermost batch exits, so subscribers never observe a half-applied
    group of mutations.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._batch_depth = 0
        self._pending: List[Tuple[str, Tuple[Any, ...], Dict[str, Any]]] = []

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register listener for event; returns a function that unsubscribes it."""
        self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        if self._batch_depth:
            self._pending.append((event, args, kwargs))
            return
        self._dispatch(event, args, kwargs)

    @contextmanager
    def batch(self) -> Generator[None, None, None]:
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                pending, self._pending = self._pending, []
                for event, args, kwargs in pending:
                    self._dispatch(event, args, kwargs)

    def _dispatch(self, event: str, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args, **kwargs)
            except Exception:
                logger.exception(f"Listener {listener!r} failed handling '{event}'")
