from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..llm import ChatClient, parse_reply
from ..models import AnalysisResult, CvssMetrics, CweSummary, VulnerabilityRecord
from ..utils import log_event

NO_CVSS = "No CVSS information available"
NO_PRODUCTS = "No affected products information available"
NO_CWE_SUMMARIES = "No CWE summaries available"

ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "analysis_summary",
        "affected_systems",
        "affected_products",
        "vulnerability_type",
        "risk_level",
        "recommendation",
        "technical_details",
    ],
    "properties": {
        "analysis_summary": {"type": "string"},
        "affected_systems": {"type": "string"},
        "affected_products": {"type": "array", "items": {"type": "string"}},
        "vulnerability_type": {"type": "string"},
        "risk_level": {"type": "integer", "enum": [0, 1, 2]},
        "recommendation": {"type": "string"},
        "technical_details": {"type": "string"},
    },
}

ANALYSIS_PROMPT = """As a cybersecurity expert, analyze vulnerability {cve_id} based on the provided information. Respond with one fenced JSON block (```json ... ```) in this shape:

{{
"analysis_summary": "Comprehensive analysis considering CVSS score, affected systems, and vulnerability type. (Max 5 sentences)",
"affected_systems": "Brief description of impacted systems/software based on the CVE description",
"affected_products": ["List", "of", "specific", "affected", "product", "names", "based", "on", "CPE", "information"],
"vulnerability_type": "Category or type of vulnerability in English",
"risk_level": 0,
"recommendation": "Specific actions to mitigate or address the vulnerability (2-3 sentences)",
"technical_details": "Technical specifics, attack vectors, and potential impact if exploited (3-4 sentences)"
}}

Guidelines:
1. Integrate all provided data (CVSS score, affected products, CWE summaries, PoC availability) for a professional analysis.
2. 'risk_level': 0 for Low, 1 for Medium, 2 for High, based on CVSS score, severity and public PoC availability.
3. 'affected_products': List specific product names affected, based on the CPE information provided.
4. 'technical_details': Be specific and technical. Do not mention the CVE ID in this field.
5. 'recommendation': Provide actionable and concrete measures.
6. 'vulnerability_type': Use standard cybersecurity terms in English.
7. For all fields except 'analysis_summary', avoid mentioning the CVE ID directly.

Description: {description}

{cvss}

{products}
CWE IDs: {cwe_ids}

CWE Summaries:
{cwe_summaries}

PoC Availability:
{poc_counts}

Provide a valid JSON response. Use Korean for all fields except 'vulnerability_type' and 'affected_products'.
"""


def format_cvss(record: VulnerabilityRecord) -> str:
    for label, metrics in (("V3", record.cvss_v3), ("V4", record.cvss_v4)):
        if metrics and metrics.is_present():
            return _format_metrics(label, metrics)
    return NO_CVSS


def _format_metrics(label: str, metrics: CvssMetrics) -> str:
    return "\n".join(
        [
            f"CVSS {label} Vector: {metrics.vector or ''}",
            f"CVSS {label} Score: {(metrics.base_score or 0.0):.1f}",
            f"CVSS {label} Severity: {metrics.base_severity or ''}",
        ]
    )


def build_analysis_prompt(
    record: VulnerabilityRecord,
    summaries: list[CweSummary],
    poc_counts: dict[str, int],
) -> str:
    if record.affected_products:
        products = "Affected Products: " + ", ".join(record.affected_products)
    else:
        products = NO_PRODUCTS
    if summaries:
        cwe_summaries = "\n".join(
            f"- {summary.cwe_id}: {summary.summary_en}" for summary in summaries
        )
    else:
        cwe_summaries = NO_CWE_SUMMARIES
    counts = "\n".join(
        f"- {source}: {count}" for source, count in sorted(poc_counts.items())
    ) or "- none"
    return ANALYSIS_PROMPT.format(
        cve_id=record.cve_id,
        description=record.description or "No description available",
        cvss=format_cvss(record),
        products=products,
        cwe_ids=", ".join(record.cwe_ids) or "None",
        cwe_summaries=cwe_summaries,
        poc_counts=counts,
    )


def analyze(
    chat: ChatClient,
    record: VulnerabilityRecord,
    summaries: list[CweSummary],
    poc_counts: dict[str, int],
    config: Config,
) -> AnalysisResult:
    """Run the model over one record and parse its reply.

    Raises ``LLMError`` on transport failures and ``ResponseParseError`` on a
    reply without a valid fenced JSON block.
    """
    logger = logging.getLogger("vulnscope.enrichment.analysis")
    prompt = build_analysis_prompt(record, summaries, poc_counts)
    reply = chat.complete(prompt, timeout=config.llm.timeout_seconds)
    payload = parse_reply(reply, ANALYSIS_SCHEMA)
    result = AnalysisResult(
        cve_id=record.cve_id,
        analysis_summary=payload["analysis_summary"],
        affected_systems=payload["affected_systems"],
        affected_products=list(payload["affected_products"]),
        vulnerability_type=payload["vulnerability_type"],
        risk_level=int(payload["risk_level"]),
        recommendation=payload["recommendation"],
        technical_details=payload["technical_details"],
        model=config.llm.model,
    )
    log_event(
        logger,
        logging.INFO,
        "analysis_parsed",
        cve_id=record.cve_id,
        risk_level=result.risk_level,
        vulnerability_type=result.vulnerability_type,
    )
    return result
