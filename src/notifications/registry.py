"""Registry of live observer connections.

Each connection registers a non-blocking ``send`` callable when it opens and
is removed when it closes. Broadcasting iterates over a snapshot, so
connections may come and go while a push is in flight.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple

from results import new_identifier

__all__ = ["Observer", "ObserverRegistry", "SendChannel"]

LOGGER = logging.getLogger(__name__)

SendChannel = Callable[[Mapping[str, Any]], None]


@dataclass(frozen=True, slots=True)
class Observer:
    connection_id: str
    user_id: Optional[str]
    send: SendChannel
    role: Optional[str] = None


class ObserverRegistry:
    """Connection id to send channel mapping owned by the dispatcher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._observers: Dict[str, Observer] = {}

    def register(
        self,
        send: SendChannel,
        *,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> str:
        connection_id = new_identifier()
        with self._lock:
            self._observers[connection_id] = Observer(
                connection_id=connection_id,
                user_id=user_id,
                send=send,
                role=role,
            )
        LOGGER.info("Observer %s connected (user=%s)", connection_id, user_id)
        return connection_id

    def unregister(self, connection_id: str) -> bool:
        with self._lock:
            removed = self._observers.pop(connection_id, None)
        if removed is not None:
            LOGGER.info("Observer %s disconnected", connection_id)
        return removed is not None

    @contextmanager
    def connection(
        self,
        send: SendChannel,
        *,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Iterator[str]:
        """Register ``send`` for the lifetime of the ``with`` block."""

        connection_id = self.register(send, user_id=user_id, role=role)
        try:
            yield connection_id
        finally:
            self.unregister(connection_id)

    def snapshot(self) -> Tuple[Observer, ...]:
        with self._lock:
            return tuple(self._observers.values())

    def for_user(self, user_id: str) -> Tuple[Observer, ...]:
        return tuple(observer for observer in self.snapshot() if observer.user_id == user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)
