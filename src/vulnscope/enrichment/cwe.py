from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from .. import net
from ..config import Config, CweConfig
from ..llm import ChatClient, parse_reply
from ..models import CweDetail, CweSummary
from ..storage import get_cwe_detail, get_cwe_summary, upsert_cwe_detail, upsert_cwe_summary
from ..utils import log_event

CWE_ID_PATTERN = re.compile(r"^CWE-(\d+)$")
SOURCE_URL = "https://cwe.mitre.org/data/definitions/{number}.html"

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["summaryEn", "summaryKo"],
    "properties": {
        "summaryEn": {"type": "string", "minLength": 1},
        "summaryKo": {"type": "string", "minLength": 1},
    },
}

SUMMARY_PROMPT = """You are a software security expert. Summarize the weakness {cwe_id} ({name}) below.

Description: {description}

Extended description: {extended_description}

Likelihood of exploit: {likelihood}

Common consequences:
{consequences}

Respond with one fenced JSON block and nothing else:

```json
{{
"summaryEn": "Technical summary in English (max 4 sentences)",
"summaryKo": "Short summary in Korean (max 2 sentences)"
}}
```
"""


class CweFetchError(Exception):
    pass


class NotWeaknessError(Exception):
    pass


class CweFetcher(Protocol):
    def fetch(self, cwe_id: str) -> CweDetail:
        ...


def normalize_cwe_id(value: str) -> str | None:
    """Return ``CWE-<n>`` for weakness ids, None for placeholders like NVD-CWE-Other."""
    candidate = value.strip().upper()
    if candidate.isdigit():
        candidate = f"CWE-{candidate}"
    match = CWE_ID_PATTERN.match(candidate)
    if not match:
        return None
    return f"CWE-{int(match.group(1))}"


def cwe_number(cwe_id: str) -> str:
    return cwe_id.split("-", 1)[1]


class MitreCweClient:
    def __init__(self, config: CweConfig) -> None:
        self.config = config

    def fetch(self, cwe_id: str) -> CweDetail:
        number = cwe_number(cwe_id)
        base = self.config.api_base.rstrip("/")
        metadata = self._get_json(f"{base}/cwe/{number}")
        entry = metadata[0] if isinstance(metadata, list) and metadata else metadata
        if not isinstance(entry, dict):
            raise CweFetchError(f"unexpected_metadata cwe_id={cwe_id}")
        cwe_type = str(entry.get("Type") or "")
        if "weakness" not in cwe_type.lower():
            raise NotWeaknessError(f"{cwe_id} is not a weakness (type: {cwe_type or 'unknown'})")

        detail = self._get_json(f"{base}/cwe/weakness/{number}")
        weaknesses = detail.get("Weaknesses") if isinstance(detail, dict) else None
        if not weaknesses:
            raise CweFetchError(f"no_weakness_detail cwe_id={cwe_id}")
        return detail_from_payload(cwe_id, weaknesses[0])

    def _get_json(self, url: str) -> Any:
        try:
            response = net.http_get(url, timeout=self.config.timeout_seconds)
        except net.NetworkError as exc:
            raise CweFetchError(str(exc)) from exc
        if response.status != 200:
            raise CweFetchError(f"http_error {response.status} url={url}")
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CweFetchError(f"invalid_json url={url}") from exc


def detail_from_payload(cwe_id: str, weakness: dict[str, Any]) -> CweDetail:
    consequences = weakness.get("CommonConsequences") or []
    return CweDetail(
        cwe_id=cwe_id,
        name=weakness.get("Name"),
        description=weakness.get("Description"),
        extended_description=weakness.get("ExtendedDescription"),
        likelihood=weakness.get("LikelihoodOfExploit"),
        common_consequences=[item for item in consequences if isinstance(item, dict)],
        raw=weakness,
    )


def build_summary_prompt(detail: CweDetail) -> str:
    consequences = []
    for item in detail.common_consequences:
        scope = ", ".join(item.get("Scope") or [])
        impact = ", ".join(item.get("Impact") or [])
        consequences.append(f"- Scope: {scope}; Impact: {impact}")
    return SUMMARY_PROMPT.format(
        cwe_id=detail.cwe_id,
        name=detail.name or "unknown",
        description=detail.description or "Not available",
        extended_description=detail.extended_description or "Not available",
        likelihood=detail.likelihood or "Unknown",
        consequences="\n".join(consequences) or "- Not available",
    )


class CweResolver:
    """Resolves CWE ids to cached bilingual summaries.

    A stored summary is returned without any network or model call. On a
    miss the raw weakness detail is fetched (or reused when already stored),
    summarized by the model, and persisted.
    """

    def __init__(
        self,
        conn,
        chat: ChatClient,
        config: Config,
        fetcher: CweFetcher | None = None,
    ) -> None:
        self.conn = conn
        self.chat = chat
        self.config = config
        self.fetcher = fetcher or MitreCweClient(config.cwe)
        self._logger = logging.getLogger("vulnscope.enrichment.cwe")

    def resolve(self, cwe_id: str, force: bool = False) -> CweSummary | None:
        normalized = normalize_cwe_id(cwe_id)
        if normalized is None:
            log_event(self._logger, logging.DEBUG, "cwe_skipped", cwe_id=cwe_id, reason="not_cwe_id")
            return None
        if not force:
            cached = get_cwe_summary(self.conn, normalized)
            if cached:
                log_event(self._logger, logging.DEBUG, "cwe_cache_hit", cwe_id=normalized)
                return cached

        detail = get_cwe_detail(self.conn, normalized)
        if detail is None:
            try:
                detail = self.fetcher.fetch(normalized)
            except NotWeaknessError as exc:
                log_event(self._logger, logging.WARNING, "cwe_not_weakness", cwe_id=normalized, error=exc)
                return None
            upsert_cwe_detail(self.conn, detail)
            log_event(self._logger, logging.INFO, "cwe_detail_fetched", cwe_id=normalized)

        reply = self.chat.complete(
            build_summary_prompt(detail), timeout=self.config.llm.timeout_seconds
        )
        payload = parse_reply(reply, SUMMARY_SCHEMA)
        summary = CweSummary(
            cwe_id=normalized,
            summary_en=payload["summaryEn"].strip(),
            summary_ko=payload["summaryKo"].strip(),
            source_url=SOURCE_URL.format(number=cwe_number(normalized)),
        )
        upsert_cwe_summary(self.conn, summary)
        log_event(self._logger, logging.INFO, "cwe_summarized", cwe_id=normalized, forced=force)
        return summary

    def resolve_all(self, cwe_ids: list[str]) -> list[CweSummary]:
        summaries: list[CweSummary] = []
        seen: set[str] = set()
        for cwe_id in cwe_ids:
            summary = self.resolve(cwe_id)
            if summary is None or summary.cwe_id in seen:
                continue
            seen.add(summary.cwe_id)
            summaries.append(summary)
        return summaries
