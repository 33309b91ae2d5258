from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from .. import net
from ..config import Config
from ..storage import count_pocs_by_source, upsert_poc_groups
from ..utils import log_event
from .poc_archive import SOURCE_NAME as ARCHIVE_SOURCE
from .poc_archive import find_archive_pocs
from .poc_github import SOURCE_NAME as GITHUB_SOURCE
from .poc_github import CodeSearchError, GitHubCodeSearch


@dataclass(frozen=True)
class PocCollection:
    cve_id: str
    stored_groups: int
    stored_files: int
    counts: dict[str, int] = field(default_factory=dict)
    skipped_sources: list[str] = field(default_factory=list)


def collect_pocs(
    conn,
    cve_id: str,
    config: Config,
    code_search_factory: Callable[[], GitHubCodeSearch] | None = None,
) -> PocCollection:
    """Collect PoC groups from the archive and code search and persist them.

    An unreadable archive index raises; code-search failures are logged and
    the archive results are still stored.
    """
    logger = logging.getLogger("vulnscope.enrichment.poc")
    groups = find_archive_pocs(cve_id, config.exploitdb.path)
    skipped: list[str] = []

    if not config.github.token:
        log_event(logger, logging.WARNING, "code_search_skipped", cve_id=cve_id, reason="no_token")
        skipped.append(GITHUB_SOURCE)
    else:
        search = code_search_factory() if code_search_factory else GitHubCodeSearch(config.github)
        try:
            groups.extend(search.search(cve_id))
        except (CodeSearchError, net.NetworkError) as exc:
            log_event(logger, logging.ERROR, "code_search_failed", cve_id=cve_id, error=exc)
            skipped.append(GITHUB_SOURCE)

    stored = upsert_poc_groups(conn, groups)
    counts = {ARCHIVE_SOURCE: 0, GITHUB_SOURCE: 0}
    counts.update(count_pocs_by_source(conn, cve_id))
    log_event(
        logger,
        logging.INFO,
        "pocs_collected",
        cve_id=cve_id,
        groups=stored["groups"],
        files=stored["files"],
        archive=counts[ARCHIVE_SOURCE],
        github=counts[GITHUB_SOURCE],
    )
    return PocCollection(
        cve_id=cve_id,
        stored_groups=stored["groups"],
        stored_files=stored["files"],
        counts=counts,
        skipped_sources=skipped,
    )
