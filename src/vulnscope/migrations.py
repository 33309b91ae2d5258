from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("vulnscope.migrations")
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_cve_records(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cve_records (
            cve_id TEXT PRIMARY KEY,
            published_at TEXT NULL,
            last_modified_at TEXT NULL,
            vuln_status TEXT NULL,
            description TEXT NULL,
            cvss_v3_vector TEXT NULL,
            cvss_v3_base_score REAL NULL,
            cvss_v3_base_severity TEXT NULL,
            cvss_v4_vector TEXT NULL,
            cvss_v4_base_score REAL NULL,
            cvss_v4_base_severity TEXT NULL,
            affected_products_json TEXT NOT NULL DEFAULT '[]',
            reference_links_json TEXT NOT NULL DEFAULT '[]',
            cwe_ids_json TEXT NOT NULL DEFAULT '[]',
            revision TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_cve_records_last_modified ON cve_records(last_modified_at)"
    )


def _migration_poc_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS poc_groups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
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
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS poc_files (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_id INTEGER NOT NULL REFERENCES poc_groups(id) ON DELETE CASCADE,
            path TEXT NOT NULL,
            file_url TEXT NOT NULL,
            raw_url TEXT NULL,
            file_ext TEXT NULL,
            content TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(group_id, file_url)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_poc_groups_cve ON poc_groups(cve_id)")


def _migration_cwe_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
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
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cwe_summaries (
            cwe_id TEXT PRIMARY KEY,
            summary_en TEXT NOT NULL,
            summary_ko TEXT NOT NULL,
            source_url TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_analysis_results(conn: sqlite3.Connection) -> None:
    conn.execute(
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
        """
    )


def _migration_queue_messages(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_messages (
            id TEXT PRIMARY KEY,
            body TEXT NOT NULL,
            enqueued_at TEXT NOT NULL,
            visible_at TEXT NOT NULL,
            receipt_handle TEXT NULL UNIQUE,
            receive_count INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_messages_visible ON queue_messages(visible_at)"
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_cve_records", _migration_cve_records),
        ("002_poc_tables", _migration_poc_tables),
        ("003_cwe_tables", _migration_cwe_tables),
        ("004_analysis_results", _migration_analysis_results),
        ("005_queue_messages", _migration_queue_messages),
    ]
