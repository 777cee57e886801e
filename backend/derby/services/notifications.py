"""Publish-on-write change feed for race and bet updates."""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

Subscriber = Callable[[str, dict[str, Any]], None]


class ChangeFeed:
    """Fan committed mutations out to subscribers.

    Delivery is best effort: a failing subscriber is logged and skipped, the
    mutation that triggered it has already been committed.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(topic, payload)
            except Exception:  # noqa: BLE001 - subscribers must not break the engine
                logger.exception("Change feed subscriber failed for topic {}", topic)


change_feed = ChangeFeed()
