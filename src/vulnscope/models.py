from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# File content that could not be fetched yet starts with this marker.
RETRY_CONTENT_PREFIX = "[RETRY_REQUIRED:"


@dataclass(frozen=True)
class CvssMetrics:
    vector: str | None
    base_score: float | None
    base_severity: str | None

    def is_present(self) -> bool:
        return bool(self.vector) or (self.base_score or 0) > 0


@dataclass(frozen=True)
class VulnerabilityRecord:
    cve_id: str
    published_at: str | None
    last_modified_at: str | None
    vuln_status: str | None
    description: str | None
    cvss_v3: CvssMetrics | None
    cvss_v4: CvssMetrics | None
    affected_products: list[str] = field(default_factory=list)
    reference_links: list[str] = field(default_factory=list)
    cwe_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PocFile:
    path: str
    file_url: str
    raw_url: str | None
    file_ext: str | None
    content: str | None = None


@dataclass(frozen=True)
class PocGroup:
    cve_id: str
    source: str
    url: str
    author: str | None
    language: str | None
    verified: bool
    description: str | None
    files: list[PocFile] = field(default_factory=list)


@dataclass(frozen=True)
class CweDetail:
    cwe_id: str
    name: str | None
    description: str | None
    extended_description: str | None
    likelihood: str | None
    common_consequences: list[dict[str, Any]]
    raw: dict[str, Any]


@dataclass(frozen=True)
class CweSummary:
    cwe_id: str
    summary_en: str
    summary_ko: str
    source_url: str | None


@dataclass(frozen=True)
class AnalysisResult:
    cve_id: str
    analysis_summary: str
    affected_systems: str
    affected_products: list[str]
    vulnerability_type: str
    risk_level: int
    recommendation: str
    technical_details: str
    model: str | None = None


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    body: str
    receipt_handle: str
    receive_count: int
