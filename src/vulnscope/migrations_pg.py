from __future__ import annotations

import logging

from .utils import utc_now_iso

_PG_MIGRATIONS: list[tuple[str, list[str]]] = [
    (
        "pg_001_cve_records",
        [
            """
            CREATE TABLE IF NOT EXISTS cve_records (
                cve_id TEXT PRIMARY KEY,
                published_at TEXT NULL,
                last_modified_at TEXT NULL,
                vuln_status TEXT NULL,
                description TEXT NULL,
                cvss_v3_vector TEXT NULL,
                cvss_v3_base_score DOUBLE PRECISION NULL,
                cvss_v3_base_severity TEXT NULL,
                cvss_v4_vector TEXT NULL,
                cvss_v4_base_score DOUBLE PRECISION NULL,
                cvss_v4_base_severity TEXT NULL,
                affected_products_json TEXT NOT NULL DEFAULT '[]',
                reference_links_json TEXT NOT NULL DEFAULT '[]',
                cwe_ids_json TEXT NOT NULL DEFAULT '[]',
                revision TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_cve_records_last_modified ON cve_records(last_modified_at)",
        ],
    ),
    (
        "pg_002_poc_tables",
        [
            """
            CREATE TABLE IF NOT EXISTS poc_groups (
                id BIGSERIAL PRIMARY KEY,
                cve_id TEXT NOT NULL,
                source TEXT NOT NULL,
                url TEXT NOT NULL,
                author TEXT NULL,
                language TEXT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                description TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(cve_id, source, url)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS poc_files (
                id BIGSERIAL PRIMARY KEY,
                group_id BIGINT NOT NULL REFERENCES poc_groups(id) ON DELETE CASCADE,
                path TEXT NOT NULL,
                file_url TEXT NOT NULL,
                raw_url TEXT NULL,
                file_ext TEXT NULL,
                content TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(group_id, file_url)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_poc_groups_cve ON poc_groups(cve_id)",
        ],
    ),
    (
        "pg_003_cwe_tables",
        [
            """
            CREATE TABLE IF NOT EXISTS cwe_details (
                cwe_id TEXT PRIMARY KEY,
                name TEXT NULL,
                description TEXT NULL,
                extended_description TEXT NULL,
                likelihood TEXT NULL,
                common_consequences_json TEXT NULL,
                raw_json TEXT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS cwe_summaries (
                cwe_id TEXT PRIMARY KEY,
                summary_en TEXT NOT NULL,
                summary_ko TEXT NOT NULL,
                source_url TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
        ],
    ),
    (
        "pg_004_analysis_results",
        [
            """
            CREATE TABLE IF NOT EXISTS analysis_results (
                cve_id TEXT PRIMARY KEY,
                analysis_summary TEXT NOT NULL,
                affected_systems TEXT NOT NULL,
                affected_products_json TEXT NOT NULL DEFAULT '[]',
                vulnerability_type TEXT NOT NULL,
                risk_level INTEGER NOT NULL,
                recommendation TEXT NOT NULL,
                technical_details TEXT NOT NULL,
                model TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
        ],
    ),
    (
        "pg_005_queue_messages",
        [
            """
            CREATE TABLE IF NOT EXISTS queue_messages (
                id TEXT PRIMARY KEY,
                body TEXT NOT NULL,
                enqueued_at TEXT NOT NULL,
                visible_at TEXT NOT NULL,
                receipt_handle TEXT NULL UNIQUE,
                receive_count INTEGER NOT NULL DEFAULT 0
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_queue_messages_visible ON queue_messages(visible_at)",
        ],
    ),
]


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("vulnscope.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, statements in _PG_MIGRATIONS:
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?) "
                "ON CONFLICT DO NOTHING",
                (version, utc_now_iso()),
            )
            conn.commit()
            logger.info("migration_applied version=%s", version)
    except Exception:
        conn.rollback()
        raise
