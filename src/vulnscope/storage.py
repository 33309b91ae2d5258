from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import connect_db, distinct_predicate
from .models import (
    AnalysisResult,
    CvssMetrics,
    CweDetail,
    CweSummary,
    PocFile,
    PocGroup,
    QueueMessage,
    RETRY_CONTENT_PREFIX,
    VulnerabilityRecord,
)
from .utils import json_dumps, json_loads_list, unique_sorted, utc_now_iso, utc_now_iso_offset

# Fields whose change marks a record as dirty. Publication and modification
# timestamps are written but never compared.
TRACKED_CVE_COLUMNS = [
    "vuln_status",
    "description",
    "cvss_v3_vector",
    "cvss_v3_base_score",
    "cvss_v3_base_severity",
    "cvss_v4_vector",
    "cvss_v4_base_score",
    "cvss_v4_base_severity",
    "affected_products_json",
    "reference_links_json",
    "cwe_ids_json",
]

_CVE_COLUMNS = [
    "cve_id",
    "published_at",
    "last_modified_at",
    "vuln_status",
    "description",
    "cvss_v3_vector",
    "cvss_v3_base_score",
    "cvss_v3_base_severity",
    "cvss_v4_vector",
    "cvss_v4_base_score",
    "cvss_v4_base_severity",
    "affected_products_json",
    "reference_links_json",
    "cwe_ids_json",
]

SORTABLE_COLUMNS = {
    "published_date": "c.published_at",
    "last_modified_date": "c.last_modified_at",
    "analysis_updated_at": "a.updated_at",
}


def init_db(path: str):
    return connect_db(path)


def upsert_cve_record(conn: Any, record: VulnerabilityRecord) -> bool:
    """Insert or update a record and report whether its content changed.

    Returns True when the row is new or any tracked column differs from the
    stored row. ``updated_at`` and ``revision`` only move in that case.
    """
    now = utc_now_iso()
    revision = uuid.uuid4().hex
    values = _cve_row_values(record)
    changed_predicate = " OR ".join(
        distinct_predicate(conn.backend, column, "cve_records")
        for column in TRACKED_CVE_COLUMNS
    )
    updates = ",\n            ".join(
        f"{column}=excluded.{column}" for column in _CVE_COLUMNS[1:]
    )
    cursor = conn.execute(
        f"""
        INSERT INTO cve_records
            ({", ".join(_CVE_COLUMNS)}, revision, created_at, updated_at)
        VALUES ({", ".join("?" for _ in _CVE_COLUMNS)}, ?, ?, ?)
        ON CONFLICT(cve_id) DO UPDATE SET
            {updates},
            revision = CASE WHEN ({changed_predicate})
                THEN excluded.revision ELSE cve_records.revision END,
            updated_at = CASE WHEN ({changed_predicate})
                THEN excluded.updated_at ELSE cve_records.updated_at END
        RETURNING revision
        """,
        (*values, revision, now, now),
    )
    row = cursor.fetchone()
    conn.commit()
    return bool(row and row[0] == revision)


def get_cve_record(conn: Any, cve_id: str) -> VulnerabilityRecord | None:
    cursor = conn.execute(
        f"SELECT {', '.join(_CVE_COLUMNS)} FROM cve_records WHERE cve_id = ?",
        (cve_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_record(row)


def get_cve_timestamps(conn: Any, cve_id: str) -> dict[str, str] | None:
    row = conn.execute(
        "SELECT created_at, updated_at, revision FROM cve_records WHERE cve_id = ?",
        (cve_id,),
    ).fetchone()
    if not row:
        return None
    return {"created_at": row[0], "updated_at": row[1], "revision": row[2]}


def upsert_poc_groups(conn: Any, groups: Iterable[PocGroup]) -> dict[str, int]:
    """Store PoC groups and their files in one transaction.

    A retry placeholder never replaces file content fetched on an earlier run.
    """
    group_count = 0
    file_count = 0
    with conn.transaction():
        for group in groups:
            now = utc_now_iso()
            cursor = conn.execute(
                """
                INSERT INTO poc_groups
                    (cve_id, source, url, author, language, verified, description,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cve_id, source, url) DO UPDATE SET
                    author=COALESCE(excluded.author, poc_groups.author),
                    language=COALESCE(excluded.language, poc_groups.language),
                    verified=excluded.verified,
                    description=COALESCE(excluded.description, poc_groups.description),
                    updated_at=excluded.updated_at
                RETURNING id
                """,
                (
                    group.cve_id,
                    group.source,
                    group.url,
                    group.author,
                    group.language,
                    1 if group.verified else 0,
                    group.description,
                    now,
                    now,
                ),
            )
            group_id = cursor.fetchone()[0]
            group_count += 1
            for poc_file in group.files:
                conn.execute(
                    """
                    INSERT INTO poc_files
                        (group_id, path, file_url, raw_url, file_ext, content, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(group_id, file_url) DO UPDATE SET
                        path=excluded.path,
                        raw_url=excluded.raw_url,
                        file_ext=excluded.file_ext,
                        content=CASE
                            WHEN excluded.content IS NULL THEN poc_files.content
                            WHEN excluded.content LIKE ? AND poc_files.content IS NOT NULL
                                THEN poc_files.content
                            ELSE excluded.content
                        END,
                        updated_at=excluded.updated_at
                    """,
                    (
                        group_id,
                        poc_file.path,
                        poc_file.file_url,
                        poc_file.raw_url,
                        poc_file.file_ext,
                        poc_file.content,
                        now,
                        now,
                        RETRY_CONTENT_PREFIX + "%",
                    ),
                )
                file_count += 1
    return {"groups": group_count, "files": file_count}


def count_pocs_by_source(conn: Any, cve_id: str) -> dict[str, int]:
    cursor = conn.execute(
        """
        SELECT g.source, COUNT(DISTINCT g.id), COUNT(f.id)
        FROM poc_groups g
        LEFT JOIN poc_files f ON f.group_id = g.id
        WHERE g.cve_id = ?
        GROUP BY g.source
        """,
        (cve_id,),
    )
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


def list_poc_groups(conn: Any, cve_id: str) -> list[PocGroup]:
    group_rows = conn.execute(
        """
        SELECT id, cve_id, source, url, author, language, verified, description
        FROM poc_groups
        WHERE cve_id = ?
        ORDER BY source, url
        """,
        (cve_id,),
    ).fetchall()
    groups: list[PocGroup] = []
    for row in group_rows:
        file_rows = conn.execute(
            """
            SELECT path, file_url, raw_url, file_ext, content
            FROM poc_files
            WHERE group_id = ?
            ORDER BY path
            """,
            (row[0],),
        ).fetchall()
        groups.append(
            PocGroup(
                cve_id=row[1],
                source=row[2],
                url=row[3],
                author=row[4],
                language=row[5],
                verified=bool(row[6]),
                description=row[7],
                files=[
                    PocFile(
                        path=file_row[0],
                        file_url=file_row[1],
                        raw_url=file_row[2],
                        file_ext=file_row[3],
                        content=file_row[4],
                    )
                    for file_row in file_rows
                ],
            )
        )
    return groups


def get_cwe_summary(conn: Any, cwe_id: str) -> CweSummary | None:
    row = conn.execute(
        "SELECT cwe_id, summary_en, summary_ko, source_url FROM cwe_summaries WHERE cwe_id = ?",
        (cwe_id,),
    ).fetchone()
    if not row:
        return None
    return CweSummary(cwe_id=row[0], summary_en=row[1], summary_ko=row[2], source_url=row[3])


def list_cwe_summaries(conn: Any, cwe_ids: list[str]) -> list[CweSummary]:
    summaries = []
    for cwe_id in cwe_ids:
        summary = get_cwe_summary(conn, cwe_id)
        if summary:
            summaries.append(summary)
    return summaries


def upsert_cwe_summary(conn: Any, summary: CweSummary) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO cwe_summaries (cwe_id, summary_en, summary_ko, source_url, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(cwe_id) DO UPDATE SET
            summary_en=excluded.summary_en,
            summary_ko=excluded.summary_ko,
            source_url=excluded.source_url,
            updated_at=excluded.updated_at
        """,
        (summary.cwe_id, summary.summary_en, summary.summary_ko, summary.source_url, now, now),
    )
    conn.commit()


def get_cwe_detail(conn: Any, cwe_id: str) -> CweDetail | None:
    row = conn.execute(
        """
        SELECT cwe_id, name, description, extended_description, likelihood,
               common_consequences_json, raw_json
        FROM cwe_details
        WHERE cwe_id = ?
        """,
        (cwe_id,),
    ).fetchone()
    if not row:
        return None
    raw = json.loads(row[6]) if row[6] else {}
    return CweDetail(
        cwe_id=row[0],
        name=row[1],
        description=row[2],
        extended_description=row[3],
        likelihood=row[4],
        common_consequences=json_loads_list(row[5]),
        raw=raw if isinstance(raw, dict) else {},
    )


def upsert_cwe_detail(conn: Any, detail: CweDetail) -> None:
    conn.execute(
        """
        INSERT INTO cwe_details
            (cwe_id, name, description, extended_description, likelihood,
             common_consequences_json, raw_json, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(cwe_id) DO UPDATE SET
            name=excluded.name,
            description=excluded.description,
            extended_description=excluded.extended_description,
            likelihood=excluded.likelihood,
            common_consequences_json=excluded.common_consequences_json,
            raw_json=excluded.raw_json,
            updated_at=excluded.updated_at
        """,
        (
            detail.cwe_id,
            detail.name,
            detail.description,
            detail.extended_description,
            detail.likelihood,
            json_dumps(detail.common_consequences),
            json_dumps(detail.raw),
            utc_now_iso(),
        ),
    )
    conn.commit()


def upsert_analysis(conn: Any, result: AnalysisResult) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO analysis_results
            (cve_id, analysis_summary, affected_systems, affected_products_json,
             vulnerability_type, risk_level, recommendation, technical_details, model,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(cve_id) DO UPDATE SET
            analysis_summary=excluded.analysis_summary,
            affected_systems=excluded.affected_systems,
            affected_products_json=excluded.affected_products_json,
            vulnerability_type=excluded.vulnerability_type,
            risk_level=excluded.risk_level,
            recommendation=excluded.recommendation,
            technical_details=excluded.technical_details,
            model=excluded.model,
            updated_at=excluded.updated_at
        """,
        (
            result.cve_id,
            result.analysis_summary,
            result.affected_systems,
            json_dumps(result.affected_products),
            result.vulnerability_type,
            result.risk_level,
            result.recommendation,
            result.technical_details,
            result.model,
            now,
            now,
        ),
    )
    conn.commit()


def get_analysis(conn: Any, cve_id: str) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT cve_id, analysis_summary, affected_systems, affected_products_json,
               vulnerability_type, risk_level, recommendation, technical_details, model,
               created_at, updated_at
        FROM analysis_results
        WHERE cve_id = ?
        """,
        (cve_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "cve_id": row[0],
        "analysis_summary": row[1],
        "affected_systems": row[2],
        "affected_products": json_loads_list(row[3]),
        "vulnerability_type": row[4],
        "risk_level": row[5],
        "recommendation": row[6],
        "technical_details": row[7],
        "model": row[8],
        "created_at": row[9],
        "updated_at": row[10],
    }


def insert_queue_message(conn: Any, body: str) -> str:
    message_id = uuid.uuid4().hex
    now = utc_now_iso()
    with conn.transaction():
        conn.execute(
            """
            INSERT INTO queue_messages (id, body, enqueued_at, visible_at, receipt_handle, receive_count)
            VALUES (?, ?, ?, ?, NULL, 0)
            """,
            (message_id, body, now, now),
        )
    return message_id


def claim_queue_messages(
    conn: Any, max_messages: int, visibility_timeout_seconds: float
) -> list[QueueMessage]:
    lock_clause = " FOR UPDATE SKIP LOCKED" if conn.backend == "postgres" else ""
    claimed: list[QueueMessage] = []
    with conn.transaction():
        rows = conn.execute(
            f"""
            SELECT id, body, receive_count
            FROM queue_messages
            WHERE visible_at <= ?
            ORDER BY enqueued_at ASC
            LIMIT ?{lock_clause}
            """,
            (utc_now_iso(), max_messages),
        ).fetchall()
        visible_at = utc_now_iso_offset(seconds=visibility_timeout_seconds)
        for message_id, body, receive_count in rows:
            handle = uuid.uuid4().hex
            conn.execute(
                """
                UPDATE queue_messages
                SET receipt_handle = ?, visible_at = ?, receive_count = receive_count + 1
                WHERE id = ?
                """,
                (handle, visible_at, message_id),
            )
            claimed.append(
                QueueMessage(
                    message_id=message_id,
                    body=body,
                    receipt_handle=handle,
                    receive_count=int(receive_count) + 1,
                )
            )
    return claimed


def delete_queue_message(conn: Any, receipt_handle: str) -> bool:
    with conn.transaction():
        cursor = conn.execute(
            "DELETE FROM queue_messages WHERE receipt_handle = ?",
            (receipt_handle,),
        )
        deleted = cursor.rowcount == 1
    return deleted


def get_queue_stats(conn: Any) -> dict[str, int]:
    total = conn.execute("SELECT COUNT(*) FROM queue_messages").fetchone()[0]
    visible = conn.execute(
        "SELECT COUNT(*) FROM queue_messages WHERE visible_at <= ?",
        (utc_now_iso(),),
    ).fetchone()[0]
    return {"total": int(total), "visible": int(visible), "in_flight": int(total) - int(visible)}


def list_cves_page(
    conn: Any,
    page: int,
    limit: int,
    query: str | None = None,
    sort_by: str | None = None,
    sort_order: str = "DESC",
) -> tuple[list[dict[str, object]], int]:
    order = "ASC" if sort_order.upper() == "ASC" else "DESC"
    where = ""
    params: list[object] = []
    if query:
        where = "WHERE LOWER(c.cve_id) LIKE ?"
        params.append(f"%{query.strip().lower()}%")
    column = SORTABLE_COLUMNS.get(sort_by or "")
    if sort_by == "analysis_updated_at":
        order_by = (
            f"ORDER BY CASE WHEN {column} IS NULL THEN 1 ELSE 0 END, "
            f"{column} {order}, c.last_modified_at DESC"
        )
    elif column:
        order_by = f"ORDER BY {column} {order}, c.last_modified_at DESC"
    else:
        order_by = "ORDER BY c.last_modified_at DESC"
    offset = max(page - 1, 0) * limit
    rows = conn.execute(
        f"""
        SELECT c.cve_id, c.published_at, c.last_modified_at, c.vuln_status,
               c.updated_at, a.updated_at, a.risk_level, a.analysis_summary,
               a.affected_products_json
        FROM cve_records c
        LEFT JOIN analysis_results a ON c.cve_id = a.cve_id
        {where}
        {order_by}
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    total = conn.execute(
        f"SELECT COUNT(*) FROM cve_records c {where}",
        tuple(params),
    ).fetchone()[0]
    items = [
        {
            "cve_id": row[0],
            "published_date": row[1],
            "last_modified_date": row[2],
            "vulnerability_status": row[3],
            "cve_updated_at": row[4],
            "analysis_updated_at": row[5],
            "risk_level": row[6],
            "analysis_summary": row[7],
            "affected_products": json_loads_list(row[8]) if row[8] else None,
        }
        for row in rows
    ]
    return items, int(total)


def _cve_row_values(record: VulnerabilityRecord) -> tuple:
    v3 = record.cvss_v3 or CvssMetrics(None, None, None)
    v4 = record.cvss_v4 or CvssMetrics(None, None, None)
    return (
        record.cve_id,
        record.published_at,
        record.last_modified_at,
        record.vuln_status,
        record.description,
        v3.vector,
        v3.base_score,
        v3.base_severity,
        v4.vector,
        v4.base_score,
        v4.base_severity,
        json_dumps(unique_sorted(record.affected_products)),
        json_dumps(unique_sorted(record.reference_links)),
        json_dumps(unique_sorted(record.cwe_ids)),
    )


def _row_to_record(row: tuple) -> VulnerabilityRecord:
    v3 = CvssMetrics(vector=row[5], base_score=row[6], base_severity=row[7])
    v4 = CvssMetrics(vector=row[8], base_score=row[9], base_severity=row[10])
    return VulnerabilityRecord(
        cve_id=row[0],
        published_at=row[1],
        last_modified_at=row[2],
        vuln_status=row[3],
        description=row[4],
        cvss_v3=v3 if v3.is_present() or v3.base_severity else None,
        cvss_v4=v4 if v4.is_present() or v4.base_severity else None,
        affected_products=json_loads_list(row[11]),
        reference_links=json_loads_list(row[12]),
        cwe_ids=json_loads_list(row[13]),
    )
