"""Execution records emitted by the dispatcher and their subscribers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

from .calls import Call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallExecuted:
    """One operation of a batch ran successfully."""

    sender: str
    target: str
    value: int
    payload: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "CallExecuted",
            "sender": self.sender,
            "target": self.target,
            "value": str(self.value),
            "payload": "0x" + self.payload.hex(),
        }


@dataclass(frozen=True)
class BatchExecuted:
    """A sponsored batch completed and consumed `nonce`."""

    nonce: int
    calls: tuple[Call, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "BatchExecuted",
            "nonce": self.nonce,
            "calls": [call.to_dict() for call in self.calls],
        }


ExecutionRecord = Union[CallExecuted, BatchExecuted]
Subscriber = Callable[[ExecutionRecord], None]


class RecordEmitter:
    """Fans committed execution records out to subscribers, in order."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, record: ExecutionRecord) -> None:
        logger.debug("Publishing %s", type(record).__name__)
        for subscriber in list(self._subscribers):
            try:
                subscriber(record)
            except Exception:
                logger.exception("Record subscriber %r failed on %s", subscriber, type(record).__name__)
