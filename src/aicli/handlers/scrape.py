"""
Web page scraping - fetch a URL and extract its readable text.

Pages that cannot be read for ordinary reasons (404, 403, timeouts,
refused connections) come back as a short "Skipped: ..." message rather
than an error, so search_online can drop them and the model can move on.
Anything else (a malformed URL, a broken response) raises HandlerError.
"""

import logging

import httpx
from lxml import etree
from lxml.html import HTMLParser
from lxml.html import fromstring as lxml_fromstring

from aicli.handlers.similarity import summarize
from aicli.tools import HandlerError

logger = logging.getLogger(__name__)

NETWORK_TIMEOUT = 10.0
SUMMARY_THRESHOLD_CHARS = 1024
SUMMARY_SENTENCES = 3
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/134.0.0.0 Safari/537.36"
)
SKIP_PREFIX = "Skipped:"

# Elements that never hold readable content
_NOISE_TAGS = (
    "script", "style", "noscript", "template", "svg", "canvas", "iframe",
    "nav", "header", "footer", "aside", "form", "button",
)
# Elements whose text should start on its own line
_BLOCK_TAGS = (
    "p", "div", "section", "article", "main", "li", "ul", "ol", "pre",
    "blockquote", "table", "tr", "td", "th", "h1", "h2", "h3", "h4", "h5",
    "h6", "dt", "dd", "figcaption", "br", "hr",
)


def extract_readable_text(html_text: str) -> str:
    """Extract the main text of an HTML page, one block per line."""
    if not html_text.strip():
        return ""
    parser = HTMLParser(recover=True, remove_comments=True, remove_pis=True)
    try:
        doc = lxml_fromstring(html_text, parser=parser)
    except (etree.ParserError, ValueError):
        return ""

    etree.strip_elements(doc, *_NOISE_TAGS, with_tail=False)

    root = None
    for path in (".//article", ".//main", ".//body"):
        root = doc.find(path)
        if root is not None:
            break
    if root is None:
        root = doc

    for element in root.iter(*_BLOCK_TAGS):
        element.tail = "\n" + (element.tail or "")
        if element.tag != "br":
            element.text = "\n" + (element.text or "")

    lines = (" ".join(line.split()) for line in root.text_content().split("\n"))
    return "\n".join(line for line in lines if line)


class Scraper:
    """Fetches pages over HTTP and returns their text."""

    def __init__(self, client: httpx.Client | None = None, timeout: float = NETWORK_TIMEOUT) -> None:
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def fetch_text(self, url: str) -> str:
        """Full readable text of url, or a "Skipped: ..." message."""
        if not url.startswith(("http://", "https://")):
            raise HandlerError(f"Unsupported URL {url!r}: only http and https are allowed")
        logger.info(f"Scraping URL: {url}")
        try:
            response = self._client.get(url)
        except httpx.TimeoutException:
            return f"{SKIP_PREFIX} Request timed out"
        except httpx.ConnectError:
            return f"{SKIP_PREFIX} Connection error"
        except httpx.InvalidURL as e:
            raise HandlerError(f"Invalid URL {url!r}: {e}") from e
        except httpx.HTTPError as e:
            raise HandlerError(f"Error fetching {url}: {e}") from e

        if response.status_code == 404:
            return f"{SKIP_PREFIX} 404 Not Found"
        if response.status_code == 403:
            return f"{SKIP_PREFIX} 403 Forbidden"
        if response.status_code == 500:
            return f"{SKIP_PREFIX} 500 Internal Server Error"
        if response.status_code != 200:
            return f"{SKIP_PREFIX} HTTP status {response.status_code}"

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            text = extract_readable_text(response.text)
        elif content_type.startswith("text/") or "json" in content_type:
            text = response.text.strip()
        else:
            return f"{SKIP_PREFIX} unsupported content type {content_type}"
        return text or "No readable content found on this page."

    def scrape_url(self, url: str, mode: str = "summarized") -> str:
        """
        Readable text of url.

        In summarized mode, text longer than SUMMARY_THRESHOLD_CHARS is
        condensed to its most representative sentences.
        """
        text = self.fetch_text(url)
        if mode == "full" or is_skipped(text) or len(text) <= SUMMARY_THRESHOLD_CHARS:
            return text
        logger.debug(f"Summarizing content from {len(text)} chars")
        return summarize(text, SUMMARY_SENTENCES) or text


def is_skipped(text: str) -> bool:
    return text.startswith(SKIP_PREFIX)
