from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import quote_plus

from .. import net
from ..config import GitHubConfig
from ..models import RETRY_CONTENT_PREFIX, PocFile, PocGroup
from ..utils import log_event
from .poc_archive import file_extension

SOURCE_NAME = "GitHub"
ALLOWED_EXTENSIONS = {
    ".py",
    ".rb",
    ".sh",
    ".yaml",
    ".yml",
    ".go",
    ".c",
    ".cpp",
    ".php",
    ".js",
    ".pl",
    ".ps1",
    ".java",
}
RATE_LIMIT_SENTINEL = RETRY_CONTENT_PREFIX + " rate limit exceeded]"


class CodeSearchError(Exception):
    pass


@dataclass
class _RepoHits:
    html_url: str
    full_name: str | None
    files: list[PocFile] = field(default_factory=list)
    seen: set[str] = field(default_factory=set)


class GitHubCodeSearch:
    """Code search for files mentioning a CVE id, grouped by repository.

    Rate-limit headers from the previous response are checked before each
    request; when the remaining quota is 1 or less the client sleeps until the
    advertised reset time. Search and repository requests that hit the limit
    are retried after the wait; file downloads store a retry placeholder.
    """

    def __init__(
        self,
        config: GitHubConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._remaining: int | None = None
        self._reset_at: str | None = None
        self._logger = logging.getLogger("vulnscope.enrichment.poc_github")

    def search(self, cve_id: str) -> list[PocGroup]:
        base = self.config.api_base.rstrip("/")
        url: str | None = (
            f"{base}/search/code?q={quote_plus(cve_id)}+in:file&per_page={self.config.per_page}"
        )
        repos: dict[str, _RepoHits] = {}
        file_count = 0
        while url and file_count < self.config.max_files:
            response = self._get(url)
            if response.status != 200:
                raise CodeSearchError(f"search_failed status={response.status}")
            try:
                payload = response.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise CodeSearchError("search_invalid_json") from exc
            for item in payload.get("items") or []:
                if file_count >= self.config.max_files:
                    break
                if self._add_item(repos, item):
                    file_count += 1
            url = extract_next_url(response.header("link"))

        groups = [self._build_group(cve_id, hits) for hits in repos.values() if hits.files]
        log_event(
            self._logger,
            logging.INFO,
            "code_search_done",
            cve_id=cve_id,
            repositories=len(groups),
            files=file_count,
        )
        return groups

    def _add_item(self, repos: dict[str, _RepoHits], item: dict[str, Any]) -> bool:
        path = str(item.get("path") or "")
        file_url = str(item.get("html_url") or "")
        repository = item.get("repository") or {}
        repo_url = str(repository.get("html_url") or "")
        if not path or not file_url or not repo_url:
            return False
        ext = file_extension(path)
        if ext not in ALLOWED_EXTENSIONS:
            return False
        hits = repos.get(repo_url)
        if hits is not None and file_url in hits.seen:
            return False
        content = self._fetch_content(item)
        if hits is None:
            hits = _RepoHits(html_url=repo_url, full_name=repository.get("full_name"))
            repos[repo_url] = hits
        hits.seen.add(file_url)
        if content is None:
            return False
        hits.files.append(
            PocFile(
                path=path,
                file_url=file_url,
                raw_url=raw_url_for(file_url),
                file_ext=ext,
                content=content,
            )
        )
        return True

    def _build_group(self, cve_id: str, hits: _RepoHits) -> PocGroup:
        metadata = self._repo_metadata(hits.full_name)
        owner = metadata.get("owner") or {}
        return PocGroup(
            cve_id=cve_id,
            source=SOURCE_NAME,
            url=hits.html_url,
            author=owner.get("login"),
            language=metadata.get("language"),
            verified=False,
            description=metadata.get("description"),
            files=hits.files,
        )

    def _repo_metadata(self, full_name: str | None) -> dict[str, Any]:
        if not full_name:
            return {}
        url = f"{self.config.api_base.rstrip('/')}/repos/{full_name}"
        try:
            response = self._get(url)
            if response.status != 200:
                raise CodeSearchError(f"repo_lookup_failed status={response.status}")
            payload = response.json()
        except (CodeSearchError, net.NetworkError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "repo_metadata_failed",
                repository=full_name,
                error=exc,
            )
            return {}
        return payload if isinstance(payload, dict) else {}

    def _fetch_content(self, item: dict[str, Any]) -> str | None:
        """Download one search hit through the contents API.

        Returns None when the file cannot be read; such files are left out.
        """
        contents_url = str(item.get("url") or "")
        if not contents_url:
            return None
        try:
            response = self._get(contents_url, retry_throttled=False)
            if self._is_throttled(response):
                return RATE_LIMIT_SENTINEL
            if response.status != 200:
                raise CodeSearchError(f"contents_lookup_failed status={response.status}")
            payload = response.json()
            download_url = payload.get("download_url") if isinstance(payload, dict) else None
            if not download_url:
                raise CodeSearchError("download_url_missing")
            raw = net.http_get(str(download_url), timeout=self.config.timeout_seconds)
            if raw.status != 200:
                raise CodeSearchError(f"download_failed status={raw.status}")
        except (CodeSearchError, net.NetworkError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "file_content_failed",
                url=contents_url,
                error=exc,
            )
            return None
        return raw.text() or None

    def _get(self, url: str, retry_throttled: bool = True) -> net.HttpResponse:
        while True:
            if self._remaining is not None and self._remaining <= 1:
                self._wait_for_reset()
            response = net.http_get(url, headers=self._headers(), timeout=self.config.timeout_seconds)
            self._record_limits(response)
            if not self._is_throttled(response):
                return response
            log_event(self._logger, logging.INFO, "rate_limited", status=response.status, url=url)
            if not retry_throttled:
                return response

    def _is_throttled(self, response: net.HttpResponse) -> bool:
        return (
            response.status in {403, 429}
            and self._remaining is not None
            and self._remaining <= 1
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.token}",
            "Accept": "application/vnd.github+json",
        }

    def _record_limits(self, response: net.HttpResponse) -> None:
        remaining = response.header("x-ratelimit-remaining")
        try:
            self._remaining = int(remaining) if remaining is not None else None
        except ValueError:
            self._remaining = None
        self._reset_at = response.header("x-ratelimit-reset")

    def _wait_for_reset(self) -> None:
        wait = self.config.fallback_wait_seconds
        try:
            reset = float(self._reset_at) if self._reset_at else None
        except ValueError:
            reset = None
        if reset is not None:
            wait = max(reset - self._clock(), 0.0)
        log_event(self._logger, logging.INFO, "rate_limit_wait", seconds=round(wait, 1))
        self._sleep(wait)
        self._remaining = None


def extract_next_url(link_header: str | None) -> str | None:
    if not link_header:
        return None
    for part in link_header.split(","):
        if 'rel="next"' not in part:
            continue
        start = part.find("<")
        end = part.find(">")
        if start != -1 and end > start:
            return part[start + 1 : end]
    return None


def raw_url_for(file_url: str) -> str | None:
    # https://github.com/<owner>/<repo>/blob/<ref>/<path>
    prefix = "https://github.com/"
    if not file_url.startswith(prefix) or "/blob/" not in file_url:
        return None
    return "https://raw.githubusercontent.com/" + file_url[len(prefix) :].replace("/blob/", "/", 1)
