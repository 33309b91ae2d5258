from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config import Config
from .enrichment.analysis import analyze
from .enrichment.cwe import CweResolver
from .enrichment.poc import PocCollection, collect_pocs
from .llm import ChatClient
from .models import QueueMessage
from .queue import MessageQueue
from .storage import get_cve_record, upsert_analysis
from .utils import log_event


class Stage(str, Enum):
    RECEIVED = "received"
    POC_COLLECTED = "poc_collected"
    CWE_RESOLVED = "cwe_resolved"
    ANALYZED = "analyzed"
    STORED = "stored"
    ACKNOWLEDGED = "acknowledged"
    DROPPED = "dropped"


@dataclass(frozen=True)
class MessageOutcome:
    cve_id: str
    stage: Stage
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage in {Stage.ACKNOWLEDGED, Stage.DROPPED} and self.error is None


class EnrichmentWorker:
    """Drains the enrichment queue one message at a time.

    Each message walks PoC collection, CWE resolution, analysis and storage
    in order. A failure leaves the message unacknowledged so the queue
    redelivers it after the visibility timeout; every stage tolerates being
    run again.
    """

    def __init__(
        self,
        conn,
        queue: MessageQueue,
        chat: ChatClient,
        config: Config,
        cwe_resolver: CweResolver | None = None,
        poc_collector: Callable[..., PocCollection] = collect_pocs,
    ) -> None:
        self.conn = conn
        self.queue = queue
        self.chat = chat
        self.config = config
        self.cwe_resolver = cwe_resolver or CweResolver(conn, chat, config)
        self.poc_collector = poc_collector
        self.interval = config.worker.short_interval_seconds
        self._logger = logging.getLogger("vulnscope.worker")

    def process_message(self, message: QueueMessage) -> MessageOutcome:
        cve_id = message.body.strip()
        stage = Stage.RECEIVED
        log_event(
            self._logger,
            logging.INFO,
            "message_received",
            cve_id=cve_id,
            message_id=message.message_id,
            receive_count=message.receive_count,
        )
        try:
            record = get_cve_record(self.conn, cve_id)
            if record is None:
                log_event(self._logger, logging.WARNING, "record_not_found", cve_id=cve_id)
                self._acknowledge(message, cve_id)
                return MessageOutcome(cve_id=cve_id, stage=Stage.DROPPED)

            pocs = self.poc_collector(self.conn, cve_id, self.config)
            stage = Stage.POC_COLLECTED

            summaries = self.cwe_resolver.resolve_all(record.cwe_ids)
            stage = Stage.CWE_RESOLVED

            result = analyze(self.chat, record, summaries, pocs.counts, self.config)
            stage = Stage.ANALYZED

            upsert_analysis(self.conn, result)
            stage = Stage.STORED
        except Exception as exc:  # noqa: BLE001
            self._rollback(cve_id)
            log_event(
                self._logger,
                logging.ERROR,
                "stage_failed",
                stage=stage.value,
                cve_id=cve_id,
                receive_count=message.receive_count,
                error=exc,
            )
            return MessageOutcome(cve_id=cve_id, stage=stage, error=str(exc))

        if not self._acknowledge(message, cve_id):
            return MessageOutcome(cve_id=cve_id, stage=Stage.STORED, error="delete_failed")
        log_event(self._logger, logging.INFO, "message_completed", cve_id=cve_id)
        return MessageOutcome(cve_id=cve_id, stage=Stage.ACKNOWLEDGED)

    def tick(self, stop_event: threading.Event | None = None) -> float:
        """Receive one batch and process it; return the delay before the next tick."""
        queue_config = self.config.queue
        try:
            messages = self.queue.receive(queue_config.batch_size, queue_config.wait_seconds)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "receive_failed", error=exc)
            return self.interval
        if not messages:
            self.interval = self.config.worker.long_interval_seconds
            return self.interval
        for message in messages:
            if stop_event is not None and stop_event.is_set():
                break
            self.process_message(message)
        self.interval = self.config.worker.short_interval_seconds
        return self.interval

    def run(self, stop_event: threading.Event) -> None:
        log_event(self._logger, logging.INFO, "worker_started")
        interval = self.interval
        while not stop_event.wait(interval):
            interval = self.tick(stop_event)
        log_event(self._logger, logging.INFO, "worker_stopped")

    def _rollback(self, cve_id: str) -> None:
        try:
            self.conn.rollback()
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "rollback_failed", cve_id=cve_id, error=exc)

    def _acknowledge(self, message: QueueMessage, cve_id: str) -> bool:
        try:
            deleted = self.queue.delete(message.receipt_handle)
        except Exception as exc:  # noqa: BLE001
            self._rollback(cve_id)
            log_event(self._logger, logging.ERROR, "delete_failed", cve_id=cve_id, error=exc)
            return False
        if not deleted:
            log_event(self._logger, logging.WARNING, "delete_failed", cve_id=cve_id, error="stale_handle")
        return deleted
