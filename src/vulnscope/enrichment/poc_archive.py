from __future__ import annotations

import csv
import logging
import os

from ..models import RETRY_CONTENT_PREFIX, PocFile, PocGroup
from ..utils import log_event

SOURCE_NAME = "Exploit-DB"
INDEX_FILENAME = "files_exploits.csv"
ENTRY_URL = "https://www.exploit-db.com/exploits/{id}"
RAW_URL = "https://gitlab.com/exploit-database/exploitdb/-/raw/main/{path}"
RETRY_SENTINEL = RETRY_CONTENT_PREFIX + " failed to read local file]"

COL_ID = 0
COL_PATH = 1
COL_DESCRIPTION = 2
COL_AUTHOR = 4
COL_VERIFIED = 9
COL_CODES = 11
MIN_COLUMNS = 12

LANGUAGE_BY_EXT = {
    ".py": "Python",
    ".rb": "Ruby",
    ".sh": "Shell",
    ".c": "C",
    ".cpp": "C++",
    ".cc": "C++",
    ".h": "C",
    ".go": "Go",
    ".php": "PHP",
    ".pl": "Perl",
    ".js": "JavaScript",
    ".java": "Java",
    ".ps1": "PowerShell",
    ".rs": "Rust",
    ".cs": "C#",
    ".asm": "Assembly",
    ".html": "HTML",
    ".txt": "Text",
    ".yaml": "YAML",
    ".yml": "YAML",
}


class ArchiveError(Exception):
    pass


def find_archive_pocs(cve_id: str, base_dir: str) -> list[PocGroup]:
    """Return one group per archive row whose reference codes include ``cve_id``.

    Raises ``ArchiveError`` when the index cannot be opened.
    """
    logger = logging.getLogger("vulnscope.enrichment.poc_archive")
    index_path = os.path.join(base_dir, INDEX_FILENAME)
    groups: list[PocGroup] = []
    try:
        with open(index_path, "r", encoding="utf-8", errors="replace", newline="") as handle:
            reader = csv.reader(handle)
            for line_no, row in enumerate(reader):
                if line_no == 0 or len(row) < MIN_COLUMNS:
                    continue
                if not _row_matches(row, cve_id):
                    continue
                groups.append(_row_to_group(row, cve_id, base_dir, logger))
    except OSError as exc:
        raise ArchiveError(f"archive_index_unreadable: {index_path}: {exc}") from exc
    except csv.Error as exc:
        raise ArchiveError(f"archive_index_malformed: {index_path}: {exc}") from exc
    log_event(logger, logging.DEBUG, "archive_scan_done", cve_id=cve_id, matches=len(groups))
    return groups


def file_extension(path: str) -> str | None:
    ext = os.path.splitext(path)[1].lower()
    return ext or None


def infer_language(path: str) -> str | None:
    ext = file_extension(path)
    if not ext:
        return None
    return LANGUAGE_BY_EXT.get(ext)


def _row_matches(row: list[str], cve_id: str) -> bool:
    return any(code.strip() == cve_id for code in row[COL_CODES].split(";"))


def _row_to_group(row: list[str], cve_id: str, base_dir: str, logger: logging.Logger) -> PocGroup:
    entry_id = row[COL_ID].strip()
    path = row[COL_PATH].strip()
    content = _read_local(os.path.join(base_dir, path), logger)
    return PocGroup(
        cve_id=cve_id,
        source=SOURCE_NAME,
        url=ENTRY_URL.format(id=entry_id),
        author=row[COL_AUTHOR].strip() or None,
        language=infer_language(path),
        verified=row[COL_VERIFIED].strip() == "1",
        description=row[COL_DESCRIPTION].strip() or None,
        files=[
            PocFile(
                path=path,
                file_url=RAW_URL.format(path=path),
                raw_url=RAW_URL.format(path=path),
                file_ext=file_extension(path),
                content=content,
            )
        ],
    )


def _read_local(path: str, logger: logging.Logger) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read()
    except OSError as exc:
        log_event(logger, logging.WARNING, "archive_file_unreadable", path=path, error=exc)
        return RETRY_SENTINEL

