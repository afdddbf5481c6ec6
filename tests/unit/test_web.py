"""Unit tests for the web tools. No network: ``_fetch`` is patched."""

import json

import pytest

from sidecar.errors import ErrorKind, ToolError
from sidecar.state.conversation import ToolCallRequest
from sidecar.tools import web
from sidecar.tools.web import html_to_text, register_web_tools

SEARCH_RESPONSE = {
    "results": [
        {"title": "Python 3.13 released", "url": "https://python.org/news", "content": "The <b>new</b> release"},
        {"title": "Other", "url": "https://example.com", "content": ""},
    ]
}


@pytest.fixture
def fetched(monkeypatch):
    calls = []

    def fake_fetch(url, timeout):
        calls.append(url)
        if "/search?" in url:
            return json.dumps(SEARCH_RESPONSE), "application/json"
        return "<html><head><title>t</title></head><body><p>Hello &amp; welcome</p><script>x()</script></body></html>", "text/html"

    monkeypatch.setattr(web, "_fetch", fake_fetch)
    return calls


def test_html_to_text():
    text = html_to_text("<div>One</div><style>p {}</style><p>Two<br>Three</p>")
    assert [line.strip() for line in text.splitlines()] == ["One", "Two", "Three"]


class TestWebTools:

    @pytest.fixture
    def ingested(self, registry):
        stored = []
        register_web_tools(registry, "http://search.local/", ingest=stored.append)
        return stored

    def _run(self, dispatcher, name, **arguments):
        return dispatcher.execute(ToolCallRequest(id="c1", name=name, arguments=arguments))

    def test_search_formats_and_ingests(self, dispatcher, ingested, fetched):
        result = self._run(dispatcher, "web_search", query="python release", category="news")
        assert result.ok
        assert "1. Python 3.13 released" in result.payload
        assert result.metadata["urls"] == ["https://python.org/news", "https://example.com"]
        assert "categories=news" in fetched[0]
        assert fetched[0].startswith("http://search.local/search?")
        assert ingested == ["Python 3.13 released\nhttps://python.org/news\nThe new release"]

    def test_unknown_category(self, dispatcher, ingested, fetched):
        result = self._run(dispatcher, "web_search", query="x", category="music")
        assert result.error_kind == ErrorKind.INVALID_ARGUMENTS
        assert fetched == []

    def test_ingest_failure_does_not_fail_search(self, registry, dispatcher, fetched):
        def broken(text):
            raise ToolError("embedding model missing")

        register_web_tools(registry, "http://search.local", ingest=broken)
        assert self._run(dispatcher, "web_search", query="python").ok

    def test_read_url(self, dispatcher, ingested, fetched):
        result = self._run(dispatcher, "read_url", url="https://example.com/page")
        assert result.payload == "Hello & welcome"

    def test_read_url_rejects_other_schemes(self, dispatcher, ingested, fetched):
        result = self._run(dispatcher, "read_url", url="file:///etc/passwd")
        assert result.error_kind == ErrorKind.INVALID_ARGUMENTS

    def test_unreachable_endpoint(self, dispatcher, ingested, monkeypatch):
        def unreachable(url, timeout):
            raise ToolError(f"Could not reach {url}: connection refused")

        monkeypatch.setattr(web, "_fetch", unreachable)
        result = self._run(dispatcher, "web_search", query="x")
        assert result.error_kind == ErrorKind.EXECUTION_FAILED
        assert "connection refused" in result.payload
