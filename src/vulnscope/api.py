from __future__ import annotations

import math
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from .config import ConfigError, load_config
from .storage import (
    SORTABLE_COLUMNS,
    get_analysis,
    get_cve_record,
    get_cve_timestamps,
    init_db,
    list_cves_page,
    list_cwe_summaries,
    list_poc_groups,
)

PAGE_SIZE = 20

app = FastAPI(title="vulnscope API")


class CveListItem(BaseModel):
    cve_id: str
    published_date: str | None = None
    last_modified_date: str | None = None
    vulnerability_status: str | None = None
    cve_updated_at: str | None = None
    analysis_updated_at: str | None = None
    risk_level: int | None = None
    analysis_summary: str | None = None
    affected_products: list[str] | None = None


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_next_page: bool
    has_prev_page: bool


class CveListResponse(BaseModel):
    data: list[CveListItem]
    pagination: Pagination


class CvssModel(BaseModel):
    vector: str | None = None
    base_score: float | None = None
    base_severity: str | None = None


class AnalysisModel(BaseModel):
    analysis_summary: str
    affected_systems: str
    affected_products: list[str]
    vulnerability_type: str
    risk_level: int
    recommendation: str
    technical_details: str
    model: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class PocFileModel(BaseModel):
    path: str
    file_url: str
    raw_url: str | None = None
    file_ext: str | None = None


class PocGroupModel(BaseModel):
    source: str
    url: str
    author: str | None = None
    language: str | None = None
    verified: bool
    description: str | None = None
    files: list[PocFileModel]


class CweSummaryModel(BaseModel):
    cwe_id: str
    summary_en: str
    summary_ko: str
    source_url: str | None = None


class CveDetailResponse(BaseModel):
    cve_id: str
    published_date: str | None = None
    last_modified_date: str | None = None
    vulnerability_status: str | None = None
    description: str | None = None
    cvss_v3: CvssModel | None = None
    cvss_v4: CvssModel | None = None
    affected_products: list[str]
    reference_links: list[str]
    cwe_ids: list[str]
    created_at: str | None = None
    updated_at: str | None = None
    analysis: AnalysisModel | None = None
    pocs: list[PocGroupModel]
    cwe_summaries: list[CweSummaryModel]


def _get_conn() -> Iterator[object]:
    try:
        config = load_config()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    conn = init_db(config.paths.state_db)
    try:
        yield conn
    finally:
        conn.close()


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/api/cves", response_model=CveListResponse)
def cve_list(
    page: int = Query(1, ge=1),
    cve_id: str | None = None,
    sort_by: str | None = None,
    sort_order: str = "DESC",
    conn=Depends(_get_conn),
) -> CveListResponse:
    if sort_by and sort_by not in SORTABLE_COLUMNS:
        raise HTTPException(status_code=400, detail="invalid sort_by")
    if sort_order.upper() not in {"ASC", "DESC"}:
        raise HTTPException(status_code=400, detail="invalid sort_order")
    items, total = list_cves_page(
        conn,
        page=page,
        limit=PAGE_SIZE,
        query=cve_id.strip() if cve_id else None,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    total_pages = math.ceil(total / PAGE_SIZE)
    return CveListResponse(
        data=[CveListItem(**item) for item in items],
        pagination=Pagination(
            current_page=page,
            total_pages=total_pages,
            total_count=total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        ),
    )


@app.get("/api/cves/{cve_id}", response_model=CveDetailResponse)
def cve_detail(cve_id: str, conn=Depends(_get_conn)) -> CveDetailResponse:
    record = get_cve_record(conn, cve_id)
    if record is None:
        raise HTTPException(status_code=404, detail="CVE not found")
    timestamps = get_cve_timestamps(conn, cve_id) or {}
    analysis = get_analysis(conn, cve_id)
    return CveDetailResponse(
        cve_id=record.cve_id,
        published_date=record.published_at,
        last_modified_date=record.last_modified_at,
        vulnerability_status=record.vuln_status,
        description=record.description,
        cvss_v3=CvssModel(**asdict(record.cvss_v3)) if record.cvss_v3 else None,
        cvss_v4=CvssModel(**asdict(record.cvss_v4)) if record.cvss_v4 else None,
        affected_products=record.affected_products,
        reference_links=record.reference_links,
        cwe_ids=record.cwe_ids,
        created_at=timestamps.get("created_at"),
        updated_at=timestamps.get("updated_at"),
        analysis=AnalysisModel(**{k: v for k, v in analysis.items() if k != "cve_id"})
        if analysis
        else None,
        pocs=[
            PocGroupModel(
                source=group.source,
                url=group.url,
                author=group.author,
                language=group.language,
                verified=group.verified,
                description=group.description,
                files=[
                    PocFileModel(
                        path=item.path,
                        file_url=item.file_url,
                        raw_url=item.raw_url,
                        file_ext=item.file_ext,
                    )
                    for item in group.files
                ],
            )
            for group in list_poc_groups(conn, cve_id)
        ],
        cwe_summaries=[
            CweSummaryModel(**asdict(summary))
            for summary in list_cwe_summaries(conn, record.cwe_ids)
        ],
    )


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("vulnscope")
    except Exception:  # noqa: BLE001
        return "unknown"
