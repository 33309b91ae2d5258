import logging
import sqlite3
from dataclasses import replace

import pytest

from vulnscope import net
from vulnscope.enrichment.poc import collect_pocs
from vulnscope.enrichment.poc_archive import ArchiveError
from vulnscope.enrichment.poc_github import RATE_LIMIT_SENTINEL, CodeSearchError
from vulnscope.models import PocFile, PocGroup
from vulnscope.storage import init_db, list_poc_groups, upsert_poc_groups

ARCHIVE_ROW = (
    "51234,exploits/php/webapps/51234.py,Example XSS,2025-01-01,jdoe,webapps,php,,"
    "2025-01-01,1,2025-01-01,CVE-2025-0001\n"
)


class StubSearch:
    def __init__(self, groups=None, error: Exception | None = None) -> None:
        self.groups = groups or []
        self.error = error
        self.calls = 0

    def search(self, cve_id: str):
        self.calls += 1
        if self.error:
            raise self.error
        return self.groups


def _github_group(cve_id: str, content: str | None = None) -> PocGroup:
    return PocGroup(
        cve_id=cve_id,
        source="GitHub",
        url="https://github.com/alice/poc",
        author="alice",
        language="Python",
        verified=False,
        description="PoC",
        files=[
            PocFile(
                path="exploit.py",
                file_url="https://github.com/alice/poc/blob/abc/exploit.py",
                raw_url="https://raw.githubusercontent.com/alice/poc/abc/exploit.py",
                file_ext=".py",
                content=content,
            )
        ],
    )


def _append_archive_row(config) -> None:
    index = f"{config.exploitdb.path}/files_exploits.csv"
    with open(index, "a", encoding="utf-8") as handle:
        handle.write(ARCHIVE_ROW)


def test_collecting_twice_stores_each_file_once(config):
    conn = init_db(config.paths.state_db)
    _append_archive_row(config)
    config = replace(config, github=replace(config.github, token="token"))
    search = StubSearch([_github_group("CVE-2025-0001")])

    first = collect_pocs(conn, "CVE-2025-0001", config, code_search_factory=lambda: search)
    second = collect_pocs(conn, "CVE-2025-0001", config, code_search_factory=lambda: search)

    assert first.counts == {"Exploit-DB": 1, "GitHub": 1}
    assert second.counts == first.counts
    assert conn.execute("SELECT COUNT(*) FROM poc_groups").fetchone()[0] == 2
    assert conn.execute("SELECT COUNT(*) FROM poc_files").fetchone()[0] == 2
    groups = list_poc_groups(conn, "CVE-2025-0001")
    assert {group.source for group in groups} == {"Exploit-DB", "GitHub"}


def test_code_search_skipped_without_token(config, caplog):
    conn = init_db(config.paths.state_db)
    search = StubSearch([_github_group("CVE-2025-0001")])
    with caplog.at_level(logging.WARNING, logger="vulnscope.enrichment.poc"):
        result = collect_pocs(conn, "CVE-2025-0001", config, code_search_factory=lambda: search)
    assert search.calls == 0
    assert result.skipped_sources == ["GitHub"]
    assert result.counts == {"Exploit-DB": 0, "GitHub": 0}
    assert "event=code_search_skipped" in caplog.text


def test_code_search_failure_keeps_archive_results(config):
    conn = init_db(config.paths.state_db)
    _append_archive_row(config)
    config = replace(config, github=replace(config.github, token="token"))
    search = StubSearch(error=CodeSearchError("search_failed status=500"))
    result = collect_pocs(conn, "CVE-2025-0001", config, code_search_factory=lambda: search)
    assert result.counts["Exploit-DB"] == 1
    assert result.skipped_sources == ["GitHub"]


def test_missing_archive_fails_collection(config, tmp_path):
    conn = init_db(config.paths.state_db)
    config = replace(config, exploitdb=replace(config.exploitdb, path=str(tmp_path / "missing")))
    with pytest.raises(ArchiveError):
        collect_pocs(conn, "CVE-2025-0001", config)


def test_dropped_connection_during_code_search_keeps_archive_results(config):
    conn = init_db(config.paths.state_db)
    _append_archive_row(config)
    config = replace(config, github=replace(config.github, token="token"))
    search = StubSearch(error=net.NetworkError("network_error: RemoteDisconnected"))
    result = collect_pocs(conn, "CVE-2025-0001", config, code_search_factory=lambda: search)
    assert result.counts == {"Exploit-DB": 1, "GitHub": 0}
    assert result.skipped_sources == ["GitHub"]


def test_retry_placeholder_never_replaces_fetched_content(config):
    conn = init_db(config.paths.state_db)
    upsert_poc_groups(conn, [_github_group("CVE-2025-0001", RATE_LIMIT_SENTINEL)])
    upsert_poc_groups(conn, [_github_group("CVE-2025-0001", "import requests")])
    upsert_poc_groups(conn, [_github_group("CVE-2025-0001", RATE_LIMIT_SENTINEL)])
    upsert_poc_groups(conn, [_github_group("CVE-2025-0001", None)])

    [group] = list_poc_groups(conn, "CVE-2025-0001")
    assert [poc_file.content for poc_file in group.files] == ["import requests"]
    assert conn.execute("SELECT COUNT(*) FROM poc_files").fetchone()[0] == 1


def test_failed_file_write_discards_its_group(config):
    conn = init_db(config.paths.state_db)
    broken = replace(
        _github_group("CVE-2025-0001"),
        files=[PocFile(path="x.py", file_url=None, raw_url=None, file_ext=".py")],
    )
    with pytest.raises(sqlite3.IntegrityError):
        upsert_poc_groups(conn, [_github_group("CVE-2025-0002"), broken])
    assert conn.execute("SELECT COUNT(*) FROM poc_groups").fetchone()[0] == 0

    upsert_poc_groups(conn, [_github_group("CVE-2025-0002")])
    assert conn.execute("SELECT COUNT(*) FROM poc_groups").fetchone()[0] == 1
