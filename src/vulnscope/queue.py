from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

from .config import QueueConfig
from .models import QueueMessage
from .storage import (
    claim_queue_messages,
    delete_queue_message,
    get_queue_stats,
    insert_queue_message,
)
from .utils import log_event


class MessageQueue(Protocol):
    def send(self, body: str) -> str:
        ...

    def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        ...

    def delete(self, receipt_handle: str) -> bool:
        ...


class DbQueue:
    """At-least-once queue stored in the ``queue_messages`` table.

    A received message stays hidden for ``visibility_timeout_seconds``; if it
    is not deleted by then it is delivered again under a new receipt handle.
    """

    def __init__(
        self,
        conn: Any,
        config: QueueConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conn = conn
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._logger = logging.getLogger("vulnscope.queue")

    def send(self, body: str) -> str:
        message_id = insert_queue_message(self.conn, body)
        log_event(self._logger, logging.DEBUG, "queue_sent", message_id=message_id, body=body)
        return message_id

    def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        deadline = self._clock() + max(wait_seconds, 0)
        while True:
            messages = claim_queue_messages(
                self.conn, max_messages, self.config.visibility_timeout_seconds
            )
            if messages:
                return messages
            remaining = deadline - self._clock()
            if remaining <= 0:
                return []
            self._sleep(min(self.config.poll_seconds, remaining))

    def delete(self, receipt_handle: str) -> bool:
        deleted = delete_queue_message(self.conn, receipt_handle)
        if not deleted:
            log_event(
                self._logger,
                logging.WARNING,
                "queue_delete_stale_handle",
                receipt_handle=receipt_handle,
            )
        return deleted

    def stats(self) -> dict[str, int]:
        return get_queue_stats(self.conn)
