from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from . import nvd_client
from .config import Config
from .queue import MessageQueue
from .storage import upsert_cve_record
from .utils import isoformat_utc, json_dumps, log_event, utc_now

FIRST_RUN_DELAY_SECONDS = 10.0


@dataclass(frozen=True)
class ProcessResult:
    cve_id: str | None
    changed: bool
    published: bool
    suppressed: bool
    publish_error: bool = False


def ingest_window(
    conn,
    queue: MessageQueue,
    config: Config,
    start: str,
    end: str,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, object]:
    """Ingest every CVE published in ``[start, end]`` and publish the changed ones."""
    logger = logging.getLogger("vulnscope.ingest")
    feed = config.feed
    start_index = 0
    total_results = 0
    processed = 0
    changed = 0
    published = 0
    suppressed = 0
    publish_errors = 0
    store_errors = 0
    errors = 0

    log_event(logger, logging.INFO, "ingest_window_start", start=start, end=end)
    while True:
        payload = nvd_client.fetch_page(feed, start, end, start_index, sleep=sleep)
        if payload is None:
            errors += 1
            log_event(
                logger,
                logging.ERROR,
                "ingest_window_aborted",
                start_index=start_index,
            )
            break
        total_results = int(payload.get("totalResults", 0))
        vulnerabilities = payload.get("vulnerabilities") or []
        for item in vulnerabilities:
            cve_item = item.get("cve") or {}
            try:
                result = process_cve_item(conn, queue, cve_item, feed.suppressed_statuses)
            except Exception as exc:  # noqa: BLE001
                store_errors += 1
                _rollback(conn, logger, cve_item.get("id"))
                log_event(
                    logger,
                    logging.ERROR,
                    "store_failed",
                    cve_id=cve_item.get("id"),
                    error=exc,
                )
                continue
            if result is None:
                continue
            processed += 1
            changed += 1 if result.changed else 0
            published += 1 if result.published else 0
            suppressed += 1 if result.suppressed else 0
            publish_errors += 1 if result.publish_error else 0

        start_index += int(payload.get("resultsPerPage") or len(vulnerabilities) or feed.results_per_page)
        if not vulnerabilities or start_index >= total_results:
            break
        sleep(feed.page_delay_seconds)

    summary = {
        "processed": processed,
        "changed": changed,
        "published": published,
        "suppressed": suppressed,
        "publish_errors": publish_errors,
        "store_errors": store_errors,
        "errors": errors,
        "total_results": total_results,
    }
    log_event(logger, logging.INFO, "ingest_window_done", summary=json_dumps(summary))
    return summary


def process_cve_item(
    conn,
    queue: MessageQueue,
    cve_item: dict[str, Any],
    suppressed_statuses: list[str],
) -> ProcessResult | None:
    """Store one feed item and publish its id when the stored content changed.

    Store errors propagate; publish errors are logged and reported.
    """
    logger = logging.getLogger("vulnscope.ingest")
    record = nvd_client.parse_cve_item(cve_item)
    if record is None:
        log_event(logger, logging.WARNING, "cve_item_skipped", reason="missing_id")
        return None
    changed = upsert_cve_record(conn, record)
    if not changed:
        log_event(logger, logging.DEBUG, "cve_unchanged", cve_id=record.cve_id)
        return ProcessResult(cve_id=record.cve_id, changed=False, published=False, suppressed=False)
    if _is_suppressed(record.vuln_status, suppressed_statuses):
        log_event(
            logger,
            logging.INFO,
            "publish_suppressed",
            cve_id=record.cve_id,
            status=record.vuln_status,
        )
        return ProcessResult(cve_id=record.cve_id, changed=True, published=False, suppressed=True)
    ok = publish_change(queue, record.cve_id)
    return ProcessResult(
        cve_id=record.cve_id,
        changed=True,
        published=ok,
        suppressed=False,
        publish_error=not ok,
    )


def publish_change(queue: MessageQueue, cve_id: str) -> bool:
    logger = logging.getLogger("vulnscope.ingest")
    try:
        message_id = queue.send(cve_id)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "publish_failed", cve_id=cve_id, error=exc)
        return False
    log_event(logger, logging.INFO, "change_published", cve_id=cve_id, message_id=message_id)
    return True


def default_window(config: Config) -> tuple[str, str]:
    end = utc_now().replace(microsecond=0)
    start = end - timedelta(days=config.feed.lookback_days)
    return isoformat_utc(start), isoformat_utc(end)


def run_collector(
    conn,
    queue: MessageQueue,
    config: Config,
    stop_event: threading.Event,
    first_delay_seconds: float = FIRST_RUN_DELAY_SECONDS,
) -> None:
    logger = logging.getLogger("vulnscope.ingest")
    interval = config.feed.interval_hours * 3600
    delay = first_delay_seconds
    log_event(logger, logging.INFO, "collector_started", interval_seconds=interval)
    while not stop_event.wait(delay):
        start, end = default_window(config)
        try:
            ingest_window(conn, queue, config, start, end)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "collector_tick_failed", error=exc)
        delay = interval
    log_event(logger, logging.INFO, "collector_stopped")


def _is_suppressed(status: str | None, suppressed_statuses: list[str]) -> bool:
    if not status:
        return False
    normalized = status.strip().lower()
    return any(normalized == item.strip().lower() for item in suppressed_statuses)


def _rollback(conn, logger: logging.Logger, cve_id: str | None) -> None:
    try:
        conn.rollback()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "rollback_failed", cve_id=cve_id, error=exc)
