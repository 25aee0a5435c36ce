"""Snapshot channel: publish/subscribe of immutable ExecutionState snapshots."""

from __future__ import annotations

import logging
from typing import Callable

from shared.workflow_contracts import ExecutionState

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[ExecutionState], None]


class SnapshotChannel:
    """Delivers every published snapshot to the callbacks registered at that moment.

    Delivery is synchronous with ``publish``. A subscriber that raises is
    logged and skipped; it never affects the publisher or other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[int, SnapshotCallback] = {}
        self._counter = 0

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        self._counter += 1
        token = self._counter
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, state: ExecutionState) -> None:
        # Copy so subscribers may detach (or attach) from inside a callback.
        for token, callback in list(self._subscribers.items()):
            try:
                callback(state)
            except Exception as exc:
                logger.warning("Snapshot subscriber %d failed: %s", token, exc)
