import http.client
import json

import pytest

from vulnscope import net
from vulnscope.nvd_client import fetch_page, parse_cve_item


def _response(status: int, payload=None, body: bytes | None = None) -> net.HttpResponse:
    if body is None:
        body = json.dumps(payload or {}).encode("utf-8")
    return net.HttpResponse(status=status, body=body, headers={})


def test_parse_prefers_v31_and_reads_v40():
    item = {
        "id": "CVE-2025-1000",
        "published": "2025-01-01T00:00:00.000",
        "lastModified": "2025-01-02T00:00:00.000",
        "vulnStatus": "Analyzed",
        "descriptions": [
            {"lang": "es", "value": "descripcion"},
            {"lang": "en", "value": "english text"},
        ],
        "metrics": {
            "cvssMetricV31": [
                {"cvssData": {"baseScore": 8.1, "baseSeverity": "HIGH", "vectorString": "CVSS:3.1/AV:N"}}
            ],
            "cvssMetricV30": [
                {"cvssData": {"baseScore": 5.0, "baseSeverity": "MEDIUM", "vectorString": "CVSS:3.0/AV:L"}}
            ],
            "cvssMetricV40": [
                {"cvssData": {"baseScore": 9.3, "baseSeverity": "CRITICAL", "vectorString": "CVSS:4.0/AV:N"}}
            ],
        },
        "weaknesses": [
            {"description": [{"value": "NVD-CWE-Other"}, {"value": "CWE-79"}]},
            {"description": [{"value": "CWE-79"}]},
        ],
    }
    record = parse_cve_item(item)
    assert record.description == "english text"
    assert record.cvss_v3.base_score == 8.1
    assert record.cvss_v3.vector == "CVSS:3.1/AV:N"
    assert record.cvss_v4.base_severity == "CRITICAL"
    assert record.cwe_ids == ["CWE-79", "NVD-CWE-Other"]
    assert record.affected_products == []


def test_parse_falls_back_to_v30():
    item = {
        "id": "CVE-2025-1001",
        "metrics": {
            "cvssMetricV30": [
                {"cvssData": {"baseScore": 5.0, "baseSeverity": "MEDIUM", "vectorString": "CVSS:3.0/AV:L"}}
            ]
        },
    }
    record = parse_cve_item(item)
    assert record.cvss_v3.vector == "CVSS:3.0/AV:L"
    assert record.cvss_v4 is None


def test_parse_rejects_missing_id():
    assert parse_cve_item({"descriptions": []}) is None


def test_fetch_page_retries_with_linear_backoff(config, monkeypatch):
    responses = [_response(503), _response(200, body=b"not json"), _response(200, {"totalResults": 0})]
    urls = []

    def fake_get(url, headers=None, timeout=30):
        urls.append((url, headers))
        return responses.pop(0)

    monkeypatch.setattr(net, "http_get", fake_get)
    sleeps = []
    payload = fetch_page(
        config.feed, "2025-01-01T00:00:00Z", "2025-01-31T00:00:00Z", 0, sleep=sleeps.append
    )
    assert payload == {"totalResults": 0}
    assert sleeps == [1, 2]
    assert "pubStartDate=2025-01-01T00%3A00%3A00Z" in urls[0][0]
    assert "resultsPerPage=500" in urls[0][0]


def test_fetch_page_gives_up_after_max_attempts(config, monkeypatch):
    calls = []

    def fake_get(url, headers=None, timeout=30):
        calls.append(url)
        raise net.NetworkError("network_error: refused")

    monkeypatch.setattr(net, "http_get", fake_get)
    sleeps = []
    payload = fetch_page(config.feed, "a", "b", 0, sleep=sleeps.append)
    assert payload is None
    assert len(calls) == config.feed.max_retries
    assert sleeps == [1, 2]


def test_fetch_page_does_not_retry_client_errors(config, monkeypatch):
    calls = []

    def fake_get(url, headers=None, timeout=30):
        calls.append(url)
        return _response(404)

    monkeypatch.setattr(net, "http_get", fake_get)
    sleeps = []
    assert fetch_page(config.feed, "a", "b", 0, sleep=sleeps.append) is None
    assert len(calls) == 1
    assert sleeps == []


def test_fetch_page_sends_api_key_header(config, monkeypatch):
    from dataclasses import replace

    seen = {}

    def fake_get(url, headers=None, timeout=30):
        seen.update(headers or {})
        return _response(200, {"totalResults": 0})

    monkeypatch.setattr(net, "http_get", fake_get)
    fetch_page(replace(config.feed, api_key="secret"), "a", "b", 0, sleep=lambda _: None)
    assert seen["apiKey"] == "secret"


def test_fetch_page_retries_dropped_connections(config, monkeypatch):
    calls = []

    def fake_urlopen(request, timeout=30):
        calls.append(request.full_url)
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(net, "urlopen", fake_urlopen)
    sleeps = []
    payload = fetch_page(config.feed, "a", "b", 0, sleep=sleeps.append)
    assert payload is None
    assert len(calls) == config.feed.max_retries
    assert sleeps == [1, 2]


def test_truncated_body_is_a_network_error(monkeypatch):
    class TruncatedResponse:
        status = 200
        headers = {}

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def read(self):
            raise http.client.IncompleteRead(b"{", 10)

    monkeypatch.setattr(net, "urlopen", lambda request, timeout=30: TruncatedResponse())
    with pytest.raises(net.NetworkError):
        net.http_get("https://services.nvd.nist.gov/rest/json/cves/2.0")

    def reset(request, timeout=30):
        raise ConnectionResetError(104, "Connection reset by peer")

    monkeypatch.setattr(net, "urlopen", reset)
    with pytest.raises(net.NetworkError):
        net.http_get("https://services.nvd.nist.gov/rest/json/cves/2.0")
