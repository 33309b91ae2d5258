from __future__ import annotations

import json
from dataclasses import replace

import pytest

from vulnscope.config import load_config
from vulnscope.models import CweDetail

ENV_VARS = [
    "VS_DB_URL",
    "VS_DB_PATH",
    "VS_DATA_DIR",
    "VS_CONFIG",
    "NVD_API_KEY",
    "NVD_API_URL",
    "GITHUB_TOKEN",
    "OPENAI_API_KEY",
    "VS_LLM_BASE_URL",
    "VS_LLM_MODEL",
    "EXPLOITDB_PATH",
]

CWE_REPLY = """Here you go:
```json
{"summaryEn": "Improper neutralization of input during web page generation.", "summaryKo": "웹 페이지 생성 중 입력값 검증 미흡."}
```
"""

ANALYSIS_PAYLOAD = {
    "analysis_summary": "요약",
    "affected_systems": "웹 애플리케이션",
    "affected_products": ["example app"],
    "vulnerability_type": "Cross-site Scripting",
    "risk_level": 2,
    "recommendation": "패치를 적용하십시오.",
    "technical_details": "세부 정보",
}


def analysis_reply(payload: dict | None = None) -> str:
    return "```json\n" + json.dumps(payload or ANALYSIS_PAYLOAD, ensure_ascii=False) + "\n```"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    archive_dir = tmp_path / "exploitdb"
    archive_dir.mkdir()
    (archive_dir / "files_exploits.csv").write_text(
        "id,file,description,date_published,author,type,platform,port,date_added,"
        "verified,date_updated,codes\n",
        encoding="utf-8",
    )
    cfg = load_config(
        env={
            "VS_DATA_DIR": str(tmp_path / "data"),
            "EXPLOITDB_PATH": str(archive_dir),
        }
    )
    return replace(
        cfg,
        feed=replace(cfg.feed, page_delay_seconds=0.0),
        queue=replace(cfg.queue, wait_seconds=0, poll_seconds=0.0),
    )


class FakeChat:
    """Chat client returning canned replies; CWE prompts and analysis prompts are told apart."""

    def __init__(self, analysis=None, cwe=CWE_REPLY) -> None:
        self.analysis = analysis if analysis is not None else analysis_reply()
        self.cwe = cwe
        self.prompts: list[str] = []
        self.timeouts: list[float] = []

    def complete(self, prompt: str, *, timeout: float) -> str:
        self.prompts.append(prompt)
        self.timeouts.append(timeout)
        reply = self.cwe if "Summarize the weakness" in prompt else self.analysis
        if isinstance(reply, Exception):
            raise reply
        return reply

    def count(self, marker: str) -> int:
        return sum(1 for prompt in self.prompts if marker in prompt)


class FakeCweFetcher:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.error = error

    def fetch(self, cwe_id: str) -> CweDetail:
        self.calls.append(cwe_id)
        if self.error:
            raise self.error
        return CweDetail(
            cwe_id=cwe_id,
            name="Improper Neutralization of Input During Web Page Generation",
            description="The product does not neutralize user-controllable input.",
            extended_description=None,
            likelihood="High",
            common_consequences=[{"Scope": ["Confidentiality"], "Impact": ["Read Application Data"]}],
            raw={"ID": cwe_id.split("-")[1]},
        )


@pytest.fixture
def fake_chat():
    return FakeChat


@pytest.fixture
def fake_fetcher():
    return FakeCweFetcher
