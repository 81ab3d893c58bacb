"""
Tests for the network-facing tool handlers.

HTTP is served by httpx.MockTransport and SMTP by a MagicMock factory, so
nothing here touches the network.
"""

import json
import smtplib
from email.message import EmailMessage
from unittest.mock import MagicMock

import httpx
import pytest

from aicli.config import ServicesConfig
from aicli.handlers import AlphaVantage, EmailSender, Scraper, WebSearch, extract_readable_text
from aicli.handlers.similarity import (
    TfIdf,
    build_term_graph,
    graph_similarity,
    relevance,
    split_sentences,
    summarize,
)
from aicli.tools import HandlerError

ARTICLE_HTML = """
<html>
  <head><title>Asyncio guide</title><style>body { color: red; }</style></head>
  <body>
    <nav>Home | Blog | Contact</nav>
    <article>
      <h1>Python asyncio tutorial</h1>
      <p>Python asyncio lets you write concurrent code with async and await.</p>
      <script>trackVisitor();</script>
      <p>An event loop runs python coroutines until they finish.</p>
    </article>
    <footer>Copyright 2024</footer>
  </body>
</html>
"""

COOKING_HTML = """
<html><body><main>
  <p>Slow roasted tomatoes need olive oil and sea salt.</p>
  <p>Bake them for three hours at a low temperature.</p>
</main></body></html>
"""


def _html(body, status=200):
    return httpx.Response(status, text=body, headers={"content-type": "text/html; charset=utf-8"})


def _scraper(routes):
    """Scraper whose client serves routes: url -> Response or exception."""
    def handler(request):
        result = routes[str(request.url)]
        if isinstance(result, Exception):
            raise result
        return result

    return Scraper(client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestExtractReadableText:
    """Tests for HTML text extraction."""

    def test_keeps_article_text_and_drops_noise(self):
        text = extract_readable_text(ARTICLE_HTML)
        lines = text.splitlines()
        assert lines[0] == "Python asyncio tutorial"
        assert "Python asyncio lets you write concurrent code with async and await." in lines
        assert "trackVisitor" not in text
        assert "Home | Blog" not in text
        assert "Copyright" not in text

    def test_falls_back_to_body(self):
        text = extract_readable_text("<html><body><div>Just a div</div></body></html>")
        assert text == "Just a div"

    def test_empty_input(self):
        assert extract_readable_text("   ") == ""

    def test_broken_markup_is_recovered(self):
        assert "unclosed paragraph" in extract_readable_text("<p>unclosed paragraph<div>and more")


class TestScraper:
    """Tests for Scraper."""

    def test_fetches_html(self):
        scraper = _scraper({"https://example.com/a": _html(ARTICLE_HTML)})
        assert "event loop" in scraper.fetch_text("https://example.com/a")

    @pytest.mark.parametrize("status, message", [
        (404, "Skipped: 404 Not Found"),
        (403, "Skipped: 403 Forbidden"),
        (500, "Skipped: 500 Internal Server Error"),
        (418, "Skipped: HTTP status 418"),
    ])
    def test_error_statuses_are_skipped(self, status, message):
        scraper = _scraper({"https://example.com/": _html("", status=status)})
        assert scraper.fetch_text("https://example.com/") == message

    def test_timeout_is_skipped(self):
        request = httpx.Request("GET", "https://slow.example.com/")
        scraper = _scraper({"https://slow.example.com/": httpx.ReadTimeout("slow", request=request)})
        assert scraper.fetch_text("https://slow.example.com/") == "Skipped: Request timed out"

    def test_connection_error_is_skipped(self):
        request = httpx.Request("GET", "https://down.example.com/")
        scraper = _scraper({"https://down.example.com/": httpx.ConnectError("refused", request=request)})
        assert scraper.fetch_text("https://down.example.com/") == "Skipped: Connection error"

    def test_plain_text_is_returned_raw(self):
        response = httpx.Response(200, text="  raw notes  ", headers={"content-type": "text/plain"})
        scraper = _scraper({"https://example.com/notes.txt": response})
        assert scraper.fetch_text("https://example.com/notes.txt") == "raw notes"

    def test_binary_content_is_skipped(self):
        response = httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        scraper = _scraper({"https://example.com/img.png": response})
        assert scraper.fetch_text("https://example.com/img.png").startswith("Skipped: unsupported")

    def test_empty_page(self):
        scraper = _scraper({"https://example.com/": _html("<html><body></body></html>")})
        assert scraper.fetch_text("https://example.com/") == "No readable content found on this page."

    def test_non_http_url_rejected(self):
        with pytest.raises(HandlerError):
            _scraper({}).fetch_text("file:///etc/passwd")

    def test_summarized_mode_condenses_long_pages(self):
        sentences = [f"Sentence number {i} talks about python packaging tools." for i in range(40)]
        page = "<html><body><p>" + " ".join(sentences) + "</p></body></html>"
        scraper = _scraper({"https://example.com/long": _html(page)})

        full = scraper.scrape_url("https://example.com/long", mode="full")
        summary = scraper.scrape_url("https://example.com/long")

        assert len(full) > 1024
        assert len(split_sentences(summary)) == 3
        assert len(summary) < len(full)

    def test_short_pages_are_not_summarized(self):
        scraper = _scraper({"https://example.com/a": _html(ARTICLE_HTML)})
        assert scraper.scrape_url("https://example.com/a") == scraper.fetch_text("https://example.com/a")


class TestWebSearch:
    """Tests for search_online."""

    def _search(self, items, pages, status=200):
        def google(request):
            assert request.url.params["q"] == "python asyncio tutorial"
            assert request.url.params["key"] == "gkey"
            assert request.url.params["cx"] == "engine"
            return httpx.Response(status, json={"items": items})

        google_client = httpx.Client(transport=httpx.MockTransport(google))
        return WebSearch("gkey", "engine", scraper=_scraper(pages), client=google_client)

    def test_ranks_relevant_pages(self):
        search = self._search(
            [
                {"title": "Cooking", "link": "https://food.example.com/"},
                {"title": "Asyncio", "link": "https://docs.example.com/asyncio"},
            ],
            {
                "https://food.example.com/": _html(COOKING_HTML),
                "https://docs.example.com/asyncio": _html(ARTICLE_HTML),
            },
        )

        results = json.loads(search.search_online("python asyncio tutorial"))

        assert [r["title"] for r in results] == ["Asyncio"]
        assert results[0]["link"] == "https://docs.example.com/asyncio"
        assert "event loop" in results[0]["content"]

    def test_skipped_pages_are_dropped(self):
        search = self._search(
            [
                {"title": "Gone", "link": "https://gone.example.com/"},
                {"title": "Asyncio", "link": "https://docs.example.com/asyncio"},
            ],
            {
                "https://gone.example.com/": _html("", status=404),
                "https://docs.example.com/asyncio": _html(ARTICLE_HTML),
            },
        )
        results = json.loads(search.search_online("python asyncio tutorial"))
        assert [r["title"] for r in results] == ["Asyncio"]

    def test_no_results(self):
        assert self._search([], {}).search_online("python asyncio tutorial") == "No results found."

    def test_no_usable_pages(self):
        search = self._search(
            [{"title": "Gone", "link": "https://gone.example.com/"}],
            {"https://gone.example.com/": _html("", status=404)},
        )
        assert search.search_online("python asyncio tutorial") == "No valid content to process."

    def test_nothing_relevant(self):
        search = self._search(
            [{"title": "Cooking", "link": "https://food.example.com/"}],
            {"https://food.example.com/": _html(COOKING_HTML)},
        )
        assert search.search_online("python asyncio tutorial").startswith("No relevant results found")

    def test_google_error(self):
        with pytest.raises(HandlerError, match="403"):
            self._search([], {}, status=403).search_online("python asyncio tutorial")

    def test_missing_credentials(self):
        with pytest.raises(HandlerError, match="GOOGLE_SEARCH_API_KEY"):
            WebSearch("", "", scraper=_scraper({})).search_online("anything")


class TestEmailSender:
    """Tests for send_email."""

    def _config(self, **overrides):
        values = {"smtp_server": "localhost", "destination_email": "me@example.com", **overrides}
        return ServicesConfig(**values)

    def test_sends_to_destination(self):
        factory = MagicMock()
        smtp = factory.return_value.__enter__.return_value
        result = EmailSender(self._config(), smtp_factory=factory).send_email("Report", "All done.")

        assert result == "Email sent successfully to me@example.com via localhost"
        factory.assert_called_once_with("localhost", 25, timeout=5.0)
        message = smtp.send_message.call_args.args[0]
        assert isinstance(message, EmailMessage)
        assert message["To"] == "me@example.com"
        assert message["From"] == "me@example.com"
        assert message["Subject"] == "Report"
        assert message.get_content().strip() == "All done."
        smtp.login.assert_not_called()

    def test_authenticates_with_remote_server(self):
        factory = MagicMock()
        smtp = factory.return_value.__enter__.return_value
        config = self._config(
            smtp_server="mail.example.com",
            smtp_username="bot",
            smtp_password="pw",
            sender_email="bot@example.com",
        )
        EmailSender(config, smtp_factory=factory).send_email("s", "b")

        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("bot", "pw")
        assert smtp.send_message.call_args.args[0]["From"] == "bot@example.com"

    def test_missing_destination(self):
        with pytest.raises(HandlerError, match="DESTINATION_EMAIL"):
            EmailSender(ServicesConfig(), smtp_factory=MagicMock()).send_email("s", "b")

    def test_smtp_failure(self):
        factory = MagicMock(side_effect=smtplib.SMTPConnectError(421, "unavailable"))
        with pytest.raises(HandlerError, match="Failed to send email"):
            EmailSender(self._config(), smtp_factory=factory).send_email("s", "b")

    def test_connection_refused(self):
        factory = MagicMock(side_effect=ConnectionRefusedError("refused"))
        with pytest.raises(HandlerError):
            EmailSender(self._config(), smtp_factory=factory).send_email("s", "b")


class TestAlphaVantage:
    """Tests for alpha_vantage_query."""

    def _client(self, captured, status=200):
        def handler(request):
            captured.update(dict(request.url.params))
            return httpx.Response(status, text='{"Global Quote": {"01. symbol": "IBM"}}')

        return httpx.Client(transport=httpx.MockTransport(handler))

    def test_query_defaults_to_compact(self):
        captured = {}
        result = AlphaVantage("demo", client=self._client(captured)).query("TIME_SERIES_DAILY", "IBM")
        assert captured == {
            "function": "TIME_SERIES_DAILY",
            "symbol": "IBM",
            "apikey": "demo",
            "outputsize": "compact",
        }
        assert "IBM" in result

    def test_global_quote_has_no_outputsize(self):
        captured = {}
        AlphaVantage("demo", client=self._client(captured)).query("GLOBAL_QUOTE", "IBM", "full")
        assert "outputsize" not in captured

    def test_missing_key(self):
        with pytest.raises(HandlerError, match="ALPHA_VANTAGE_API_KEY"):
            AlphaVantage("", client=self._client({})).query("GLOBAL_QUOTE", "IBM")

    def test_http_error(self):
        with pytest.raises(HandlerError, match="503"):
            AlphaVantage("demo", client=self._client({}, status=503)).query("GLOBAL_QUOTE", "IBM")


class TestSimilarity:
    """Tests for relevance scoring and summaries."""

    def test_identical_graphs(self):
        graph = build_term_graph("a b c")
        assert graph_similarity(graph, graph) == 1.0

    def test_disjoint_graphs(self):
        assert graph_similarity(build_term_graph("a b"), build_term_graph("c d")) == 0.0

    def test_relevant_document_scores_higher(self):
        docs = [
            "python asyncio runs coroutines on an event loop",
            "tomatoes roast slowly with olive oil",
        ]
        tfidf = TfIdf.fit(docs)
        assert relevance("python asyncio", docs[0], tfidf) > relevance("python asyncio", docs[1], tfidf)
        assert relevance("python asyncio", docs[1], tfidf) == 0.0

    def test_summarize_keeps_original_order(self):
        text = (
            "Python packaging uses pyproject files. "
            "Cats sleep a lot. "
            "Python packaging tools read pyproject files. "
            "Weather is mild today. "
            "Packaging python projects needs pyproject metadata."
        )
        summary = summarize(text, max_sentences=2)
        sentences = split_sentences(summary)
        assert len(sentences) == 2
        positions = [text.index(s) for s in sentences]
        assert positions == sorted(positions)

    def test_summarize_short_text_unchanged(self):
        assert summarize("One sentence. Two sentences.", max_sentences=3) == "One sentence. Two sentences."

    def test_split_sentences(self):
        assert split_sentences("First one. Second one!\nThird one?") == ["First one.", "Second one!", "Third one?"]
