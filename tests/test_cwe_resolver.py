import json

import pytest

from vulnscope import net
from vulnscope.enrichment.cwe import (
    CweFetchError,
    CweResolver,
    MitreCweClient,
    NotWeaknessError,
    normalize_cwe_id,
)
from vulnscope.llm import ResponseParseError
from vulnscope.storage import get_cwe_detail, get_cwe_summary, init_db


def _response(status: int, payload) -> net.HttpResponse:
    return net.HttpResponse(status=status, body=json.dumps(payload).encode("utf-8"))


def test_second_resolution_is_a_cache_hit(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    chat = fake_chat()
    fetcher = fake_fetcher()
    resolver = CweResolver(conn, chat, config, fetcher=fetcher)

    first = resolver.resolve("CWE-79")
    second = resolver.resolve("cwe-79")

    assert fetcher.calls == ["CWE-79"]
    assert len(chat.prompts) == 1
    assert chat.timeouts == [config.llm.timeout_seconds]
    assert first == second
    assert first.summary_en.startswith("Improper neutralization")
    assert first.summary_ko
    assert first.source_url == "https://cwe.mitre.org/data/definitions/79.html"
    assert get_cwe_summary(conn, "CWE-79") == first


def test_placeholder_ids_are_skipped(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    chat = fake_chat()
    fetcher = fake_fetcher()
    resolver = CweResolver(conn, chat, config, fetcher=fetcher)
    assert resolver.resolve("NVD-CWE-Other") is None
    assert resolver.resolve("NVD-CWE-noinfo") is None
    assert fetcher.calls == []
    assert chat.prompts == []


def test_non_weakness_is_logged_and_skipped(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    chat = fake_chat()
    resolver = CweResolver(
        conn, chat, config, fetcher=fake_fetcher(error=NotWeaknessError("CWE-1000 is a view"))
    )
    assert resolver.resolve("CWE-1000") is None
    assert chat.prompts == []


def test_fetch_failure_propagates(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    resolver = CweResolver(
        conn, fake_chat(), config, fetcher=fake_fetcher(error=CweFetchError("http_error 503"))
    )
    with pytest.raises(CweFetchError):
        resolver.resolve("CWE-89")
    assert get_cwe_summary(conn, "CWE-89") is None


def test_bad_summary_reply_keeps_detail_for_retry(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    fetcher = fake_fetcher()
    resolver = CweResolver(conn, fake_chat(cwe="no fence here"), config, fetcher=fetcher)
    with pytest.raises(ResponseParseError):
        resolver.resolve("CWE-22")
    assert get_cwe_summary(conn, "CWE-22") is None
    assert get_cwe_detail(conn, "CWE-22") is not None

    retry = CweResolver(conn, fake_chat(), config, fetcher=fetcher)
    assert retry.resolve("CWE-22") is not None
    assert fetcher.calls == ["CWE-22"]


def test_force_resummarizes_from_stored_detail(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    chat = fake_chat()
    fetcher = fake_fetcher()
    resolver = CweResolver(conn, chat, config, fetcher=fetcher)
    resolver.resolve("CWE-79")
    resolver.resolve("CWE-79", force=True)
    assert fetcher.calls == ["CWE-79"]
    assert len(chat.prompts) == 2


def test_resolve_all_preserves_order_and_skips_unresolved(config, fake_chat, fake_fetcher):
    conn = init_db(config.paths.state_db)
    resolver = CweResolver(conn, fake_chat(), config, fetcher=fake_fetcher())
    summaries = resolver.resolve_all(["CWE-89", "NVD-CWE-Other", "CWE-79", "CWE-089"])
    assert [summary.cwe_id for summary in summaries] == ["CWE-89", "CWE-79"]


def test_normalize_cwe_id():
    assert normalize_cwe_id(" cwe-079 ") == "CWE-79"
    assert normalize_cwe_id("352") == "CWE-352"
    assert normalize_cwe_id("NVD-CWE-Other") is None


def test_mitre_client_fetches_metadata_then_detail(config, monkeypatch):
    routes = {
        "https://cwe-api.mitre.org/api/v1/cwe/79": _response(200, [{"ID": "79", "Type": "base_weakness"}]),
        "https://cwe-api.mitre.org/api/v1/cwe/weakness/79": _response(
            200,
            {
                "Weaknesses": [
                    {
                        "ID": "79",
                        "Name": "Cross-site Scripting",
                        "Description": "desc",
                        "ExtendedDescription": "ext",
                        "LikelihoodOfExploit": "High",
                        "CommonConsequences": [{"Scope": ["Integrity"], "Impact": ["Execute Code"]}],
                    }
                ]
            },
        ),
    }
    requested = []

    def fake_get(url, headers=None, timeout=30):
        requested.append(url)
        return routes[url]

    monkeypatch.setattr(net, "http_get", fake_get)
    detail = MitreCweClient(config.cwe).fetch("CWE-79")
    assert requested == list(routes)
    assert detail.name == "Cross-site Scripting"
    assert detail.likelihood == "High"
    assert detail.common_consequences[0]["Impact"] == ["Execute Code"]


def test_mitre_client_rejects_categories(config, monkeypatch):
    monkeypatch.setattr(
        net,
        "http_get",
        lambda url, headers=None, timeout=30: _response(200, [{"ID": "1000", "Type": "view"}]),
    )
    with pytest.raises(NotWeaknessError):
        MitreCweClient(config.cwe).fetch("CWE-1000")


def test_mitre_client_wraps_http_errors(config, monkeypatch):
    monkeypatch.setattr(
        net, "http_get", lambda url, headers=None, timeout=30: _response(500, {"error": "boom"})
    )
    with pytest.raises(CweFetchError):
        MitreCweClient(config.cwe).fetch("CWE-79")
