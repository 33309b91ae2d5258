from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable
from urllib.parse import urlencode

from . import net
from .config import FeedConfig
from .models import CvssMetrics, VulnerabilityRecord
from .utils import log_event, unique_sorted

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def fetch_page(
    config: FeedConfig,
    start: str,
    end: str,
    start_index: int,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any] | None:
    """Fetch one page of CVEs published in ``[start, end]``.

    Returns None once ``max_retries`` attempts are spent or on a
    non-retryable HTTP status.
    """
    logger = logging.getLogger("vulnscope.nvd_client")
    params = {
        "pubStartDate": start,
        "pubEndDate": end,
        "startIndex": start_index,
        "resultsPerPage": config.results_per_page,
    }
    url = f"{config.api_url}?{urlencode(params)}"
    headers = {}
    if config.api_key:
        headers["apiKey"] = config.api_key
    attempts = max(config.max_retries, 1)
    for attempt in range(attempts):
        try:
            response = net.http_get(url, headers=headers, timeout=config.timeout_seconds)
        except net.NetworkError as exc:
            log_event(
                logger,
                logging.WARNING,
                "feed_fetch_retry",
                attempt=attempt + 1,
                start_index=start_index,
                error=exc,
            )
        else:
            if response.status == 200:
                try:
                    payload = response.json()
                except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                    log_event(
                        logger,
                        logging.WARNING,
                        "feed_fetch_retry",
                        attempt=attempt + 1,
                        start_index=start_index,
                        error=f"invalid_json: {exc}",
                    )
                else:
                    if isinstance(payload, dict):
                        return payload
                    log_event(
                        logger,
                        logging.WARNING,
                        "feed_fetch_retry",
                        attempt=attempt + 1,
                        start_index=start_index,
                        error="unexpected_payload",
                    )
            elif response.status in RETRYABLE_STATUSES:
                log_event(
                    logger,
                    logging.WARNING,
                    "feed_fetch_retry",
                    attempt=attempt + 1,
                    start_index=start_index,
                    status=response.status,
                )
            else:
                log_event(
                    logger,
                    logging.ERROR,
                    "feed_fetch_failed",
                    start_index=start_index,
                    status=response.status,
                )
                return None
        if attempt + 1 < attempts:
            sleep(attempt + 1)
    log_event(
        logger,
        logging.ERROR,
        "feed_fetch_failed",
        start_index=start_index,
        attempts=attempts,
    )
    return None


def parse_cve_item(cve_item: dict[str, Any]) -> VulnerabilityRecord | None:
    cve_id = str(cve_item.get("id") or "").strip()
    if not cve_id:
        return None
    metrics = cve_item.get("metrics") or {}
    cvss_v3 = _extract_cvss(metrics.get("cvssMetricV31")) or _extract_cvss(
        metrics.get("cvssMetricV30")
    )
    cvss_v4 = _extract_cvss(metrics.get("cvssMetricV40"))
    return VulnerabilityRecord(
        cve_id=cve_id,
        published_at=cve_item.get("published"),
        last_modified_at=cve_item.get("lastModified"),
        vuln_status=cve_item.get("vulnStatus"),
        description=_extract_description(cve_item.get("descriptions")),
        cvss_v3=cvss_v3,
        cvss_v4=cvss_v4,
        affected_products=unique_sorted(_extract_products(cve_item.get("configurations"))),
        reference_links=unique_sorted(
            [
                str(ref.get("url") or "")
                for ref in cve_item.get("references") or []
                if isinstance(ref, dict)
            ]
        ),
        cwe_ids=unique_sorted(_extract_cwe_ids(cve_item.get("weaknesses"))),
    )


def _extract_description(descriptions: Any) -> str | None:
    if isinstance(descriptions, str):
        text = descriptions.strip()
        return text or None
    if isinstance(descriptions, list):
        for entry in descriptions:
            if isinstance(entry, dict) and entry.get("lang") == "en":
                text = str(entry.get("value") or "").strip()
                if text:
                    return text
        for entry in descriptions:
            if isinstance(entry, dict):
                text = str(entry.get("value") or "").strip()
                if text:
                    return text
    return None


def _extract_cvss(entries: list[dict[str, Any]] | None) -> CvssMetrics | None:
    if not entries:
        return None
    entry = entries[0]
    cvss = entry.get("cvssData") or {}
    score = cvss.get("baseScore")
    return CvssMetrics(
        vector=cvss.get("vectorString") or None,
        base_score=float(score) if score is not None else None,
        base_severity=cvss.get("baseSeverity") or entry.get("baseSeverity") or None,
    )


def _extract_products(configurations: Any) -> list[str]:
    products: list[str] = []
    for configuration in configurations or []:
        for node in configuration.get("nodes") or []:
            for match in node.get("cpeMatch") or []:
                criteria = match.get("criteria")
                if criteria:
                    products.append(str(criteria))
    return products


def _extract_cwe_ids(weaknesses: Any) -> list[str]:
    cwe_ids: list[str] = []
    for weakness in weaknesses or []:
        for description in weakness.get("description") or []:
            value = description.get("value")
            if value:
                cwe_ids.append(str(value))
    return cwe_ids
