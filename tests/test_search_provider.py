from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from ragquery.errors import RateExhaustedError, UpstreamProviderError
from ragquery.models.domain import ProviderType, SearchResult, Window
from ragquery.services.rate_gate import RateGate, WindowPolicy
from ragquery.tools import search_provider
from ragquery.tools.duckduckgo_search import decode_result_url, parse_results

RESULTS = [
    SearchResult(title="Rust 1.80", url="https://blog.rust-lang.org/1.80", snippet="released"),
    SearchResult(title="Changelog", url="https://github.com/rust-lang/rust", snippet="notes"),
]


def _open_gate():
    gate = MagicMock()
    gate.admit = AsyncMock(return_value=True)
    gate.denying_window = MagicMock(return_value=None)
    return gate


def _settings(mock_settings, tavily="", brave="", searxng=""):
    mock_settings.tavily_api_key = tavily
    mock_settings.brave_api_key = brave
    mock_settings.searxng_base_url = searxng
    mock_settings.search_max_results = 5


class TestCandidates:
    def test_auto_chain_follows_configuration(self):
        with patch("ragquery.tools.search_provider.settings") as mock_settings:
            _settings(mock_settings, brave="b", searxng="http://searx.local")
            assert search_provider.candidates(None) == [
                ProviderType.BRAVE,
                ProviderType.SEARXNG,
                ProviderType.DUCKDUCKGO,
            ]
            assert search_provider.candidates("auto") == search_provider.candidates(None)

    def test_explicit_provider_is_tried_alone(self):
        with patch("ragquery.tools.search_provider.settings") as mock_settings:
            _settings(mock_settings, tavily="t", brave="b")
            assert search_provider.candidates("Brave") == [ProviderType.BRAVE]

    def test_unconfigured_or_unknown_request_uses_chain(self):
        with patch("ragquery.tools.search_provider.settings") as mock_settings:
            _settings(mock_settings)
            assert search_provider.candidates("tavily") == [ProviderType.DUCKDUCKGO]
            assert search_provider.candidates("groq") == [ProviderType.DUCKDUCKGO]


class TestSearch:
    @pytest.mark.asyncio
    async def test_first_configured_provider_answers(self):
        gate = _open_gate()
        with patch("ragquery.tools.search_provider.settings") as mock_settings, patch(
            "ragquery.tools.tavily_search.search", new=AsyncMock(return_value=RESULTS)
        ) as tavily:
            _settings(mock_settings, tavily="t")
            response = await search_provider.search("rust release", rate_gate=gate)

        assert response.provider is ProviderType.TAVILY
        assert response.results == RESULTS
        assert response.fallback_from is None
        tavily.assert_awaited_once_with("rust release", max_results=5)
        gate.admit.assert_awaited_once_with(ProviderType.TAVILY)

    @pytest.mark.asyncio
    async def test_upstream_failure_falls_through_chain(self):
        request = httpx.Request("GET", "https://api.search.brave.com/res/v1/web/search")
        failure = httpx.HTTPStatusError(
            "quota", request=request, response=httpx.Response(429, text="quota exceeded", request=request)
        )
        with patch("ragquery.tools.search_provider.settings") as mock_settings, patch(
            "ragquery.tools.brave_search.search", new=AsyncMock(side_effect=failure)
        ), patch("ragquery.tools.duckduckgo_search.search", new=AsyncMock(return_value=RESULTS[:1])):
            _settings(mock_settings, brave="b")
            response = await search_provider.search("rust", rate_gate=_open_gate())

        assert response.provider is ProviderType.DUCKDUCKGO
        assert response.fallback_from is ProviderType.BRAVE
        assert "Brave error (429): quota exceeded" in response.fallback_reason

    @pytest.mark.asyncio
    async def test_exhausted_provider_is_skipped_without_a_call(self, storage, clock):
        gate = RateGate(
            storage,
            policies={
                ProviderType.TAVILY: (WindowPolicy(Window.MONTH, 0),),
                ProviderType.DUCKDUCKGO: (WindowPolicy(Window.MINUTE, 20),),
            },
            clock=clock,
        )
        tavily = AsyncMock(return_value=RESULTS)
        with patch("ragquery.tools.search_provider.settings") as mock_settings, patch(
            "ragquery.tools.tavily_search.search", new=tavily
        ), patch("ragquery.tools.duckduckgo_search.search", new=AsyncMock(return_value=RESULTS)):
            _settings(mock_settings, tavily="t")
            response = await search_provider.search("rust", rate_gate=gate)

        tavily.assert_not_awaited()
        assert response.provider is ProviderType.DUCKDUCKGO
        assert "month" in response.fallback_reason

    @pytest.mark.asyncio
    async def test_explicit_provider_error_is_raised(self):
        gate = _open_gate()
        gate.admit.return_value = False
        gate.denying_window.return_value = Window.MINUTE
        with patch("ragquery.tools.search_provider.settings") as mock_settings:
            _settings(mock_settings, brave="b")
            with pytest.raises(RateExhaustedError, match="Brave"):
                await search_provider.search("rust", "brave", rate_gate=gate)

    @pytest.mark.asyncio
    async def test_every_provider_failing_raises_last_error(self):
        with patch("ragquery.tools.search_provider.settings") as mock_settings, patch(
            "ragquery.tools.duckduckgo_search.search", new=AsyncMock(side_effect=httpx.ConnectError("offline"))
        ):
            _settings(mock_settings)
            with pytest.raises(UpstreamProviderError, match="DuckDuckGo"):
                await search_provider.search("rust", rate_gate=_open_gate())

    @pytest.mark.asyncio
    async def test_results_are_capped(self):
        many = [SearchResult(title=f"r{i}", url=f"https://e.com/{i}") for i in range(8)]
        with patch("ragquery.tools.search_provider.settings") as mock_settings, patch(
            "ragquery.tools.duckduckgo_search.search", new=AsyncMock(return_value=many)
        ):
            _settings(mock_settings)
            response = await search_provider.search("rust", rate_gate=_open_gate(), max_results=3)

        assert len(response.results) == 3


DDG_HTML = """
<html><body>
  <div class="result">
    <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fwww.python.org%2Fdownloads%2F&rut=abc">Download Python</a>
    <a class="result__snippet">The official home of the <b>Python</b> language.</a>
  </div>
  <div class="result">
    <a class="result__a" href="https://docs.python.org/3/">Python docs</a>
  </div>
  <div class="result">
    <a class="result__a" href="/relative/only">Broken</a>
  </div>
  <div class="result"><span>no link</span></div>
</body></html>
"""


class TestDuckDuckGo:
    def test_decode_redirect(self):
        assert decode_result_url("//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fa%3Fb%3D1") == (
            "https://example.com/a?b=1"
        )
        assert decode_result_url("//example.com/x") == "https://example.com/x"
        assert decode_result_url("https://example.com") == "https://example.com"

    def test_parse_results(self):
        results = parse_results(DDG_HTML, max_results=5)

        assert results == [
            SearchResult(
                title="Download Python",
                url="https://www.python.org/downloads/",
                snippet="The official home of the Python language.",
            ),
            SearchResult(title="Python docs", url="https://docs.python.org/3/", snippet=""),
        ]

    def test_parse_respects_max_results(self):
        assert len(parse_results(DDG_HTML, max_results=1)) == 1
