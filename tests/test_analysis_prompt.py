import pytest

from vulnscope.enrichment.analysis import (
    NO_CVSS,
    NO_CWE_SUMMARIES,
    NO_PRODUCTS,
    analyze,
    build_analysis_prompt,
)
from vulnscope.llm import LLMError, ResponseParseError
from vulnscope.models import CvssMetrics, CweSummary, VulnerabilityRecord


def _record(cvss_v3=None, cvss_v4=None, products=None) -> VulnerabilityRecord:
    return VulnerabilityRecord(
        cve_id="CVE-2025-0001",
        published_at="2025-01-01T00:00:00.000",
        last_modified_at="2025-01-02T00:00:00.000",
        vuln_status="Analyzed",
        description="Stored XSS in the comment form.",
        cvss_v3=cvss_v3,
        cvss_v4=cvss_v4,
        affected_products=products or [],
        cwe_ids=["CWE-79"],
    )


def test_prompt_uses_v3_when_present():
    record = _record(
        cvss_v3=CvssMetrics("CVSS:3.1/AV:N/AC:L", 7.5, "HIGH"),
        cvss_v4=CvssMetrics("CVSS:4.0/AV:N", 9.3, "CRITICAL"),
        products=["cpe:2.3:a:example:app:1.0"],
    )
    summaries = [CweSummary("CWE-79", "XSS summary.", "XSS 요약.", None)]
    prompt = build_analysis_prompt(record, summaries, {"Exploit-DB": 1, "GitHub": 2})
    assert "CVSS V3 Vector: CVSS:3.1/AV:N/AC:L" in prompt
    assert "CVSS V3 Score: 7.5" in prompt
    assert "CVSS V3 Severity: HIGH" in prompt
    assert "CVSS V4" not in prompt
    assert "Affected Products: cpe:2.3:a:example:app:1.0" in prompt
    assert "- CWE-79: XSS summary." in prompt
    assert "- Exploit-DB: 1" in prompt
    assert "- GitHub: 2" in prompt
    assert "Description: Stored XSS in the comment form." in prompt


def test_prompt_falls_back_to_v4():
    record = _record(cvss_v3=CvssMetrics(None, 0.0, None), cvss_v4=CvssMetrics("CVSS:4.0/AV:N", 9.3, "CRITICAL"))
    prompt = build_analysis_prompt(record, [], {})
    assert "CVSS V4 Score: 9.3" in prompt
    assert "CVSS V3" not in prompt


def test_prompt_literals_when_data_missing():
    prompt = build_analysis_prompt(_record(), [], {})
    assert NO_CVSS in prompt
    assert NO_PRODUCTS in prompt
    assert NO_CWE_SUMMARIES in prompt


def test_analyze_parses_reply(config, fake_chat):
    chat = fake_chat()
    result = analyze(chat, _record(cvss_v3=CvssMetrics("v", 7.5, "HIGH")), [], {}, config)
    assert result.cve_id == "CVE-2025-0001"
    assert result.risk_level == 2
    assert result.vulnerability_type == "Cross-site Scripting"
    assert result.model == config.llm.model
    assert chat.timeouts == [120]


def test_analyze_rejects_unfenced_reply(config, fake_chat):
    with pytest.raises(ResponseParseError):
        analyze(fake_chat(analysis="I cannot help"), _record(), [], {}, config)


def test_analyze_propagates_model_errors(config, fake_chat):
    with pytest.raises(LLMError):
        analyze(fake_chat(analysis=LLMError("timeout")), _record(), [], {}, config)
