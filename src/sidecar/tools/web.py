"""Web search (SearXNG) and page reading tools."""

import html
import json
import re
import urllib.error
import urllib.request
from typing import Callable, Optional
from urllib.parse import urlencode

from pydantic import Field

from ..errors import InvalidArguments, ToolError
from ..logging_config import get_logger
from .base import Capability, ToolArgs, ToolContext, ToolOutput, ToolSpec
from .registry import ToolRegistry

logger = get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) sidecar/0.1"
SEARCH_CATEGORIES = ("general", "news", "it", "science")
MAX_URL_CHARS = 20_000


class WebSearchArgs(ToolArgs):
    query: str = Field(min_length=1, description="Search query")
    category: str = Field(default="general", description="One of: general, news, it, science")
    max_results: int = Field(default=5, ge=1, le=10)


class ReadUrlArgs(ToolArgs):
    url: str = Field(description="http(s) URL to fetch")
    max_chars: int = Field(default=MAX_URL_CHARS, ge=500, le=100_000)


def html_to_text(markup: str) -> str:
    """Strip scripts, styles and tags from HTML, keeping paragraph breaks."""
    text = re.sub(r"(?is)<(script|style|noscript|svg|head)[^>]*>.*?</\1>", " ", markup)
    text = re.sub(r"(?i)<br\s*/?>", "\n", text)
    text = re.sub(r"(?i)</(p|div|li|h[1-6]|tr|section|article)>", "\n", text)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def _fetch(url: str, timeout: float) -> tuple[str, str]:
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT, "Accept": "*/*"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            content_type = response.headers.get("Content-Type", "")
            charset = response.headers.get_content_charset() or "utf-8"
            body = response.read(5_000_000).decode(charset, errors="replace")
    except urllib.error.HTTPError as e:
        raise ToolError(f"HTTP {e.code} fetching {url}")
    except urllib.error.URLError as e:
        raise ToolError(f"Could not reach {url}: {e.reason}")
    except TimeoutError:
        raise ToolError(f"Timed out fetching {url}")
    return body, content_type


class WebTools:
    """Handlers for the network tools.

    Args:
        search_url: Base URL of a SearXNG instance with the JSON format enabled.
        ingest: Optional callback storing each search snippet in the ``web`` collection.
        request_timeout: Per-request socket timeout.
    """

    def __init__(
        self,
        search_url: str,
        ingest: Optional[Callable[[str], object]] = None,
        request_timeout: float = 15.0,
    ):
        self.search_url = search_url.rstrip("/")
        self.ingest = ingest
        self.request_timeout = request_timeout

    def web_search(self, args: WebSearchArgs, ctx: ToolContext) -> ToolOutput:
        if args.category not in SEARCH_CATEGORIES:
            raise InvalidArguments(f"Unknown category '{args.category}'. Use one of: {', '.join(SEARCH_CATEGORIES)}")
        query = urlencode(
            {"q": args.query, "format": "json", "language": "en-US", "categories": args.category}
        )
        body, _ = _fetch(f"{self.search_url}/search?{query}", self.request_timeout)
        ctx.token.raise_if_cancelled()
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise ToolError("Search endpoint did not return JSON; is the json format enabled in SearXNG?")

        results = []
        for item in data.get("results", [])[: args.max_results]:
            results.append(
                {
                    "title": (item.get("title") or "").strip(),
                    "url": item.get("url") or "",
                    "snippet": html_to_text(item.get("content") or "")[:500],
                }
            )
        if not results:
            return ToolOutput(text=f"No results for '{args.query}'", metadata={"count": 0})

        lines = []
        for i, r in enumerate(results, start=1):
            lines.append(f"{i}. {r['title']}\n   {r['url']}\n   {r['snippet']}")
            if self.ingest is not None and r["snippet"]:
                try:
                    self.ingest(f"{r['title']}\n{r['url']}\n{r['snippet']}")
                except ToolError as e:
                    logger.warning("Could not store search result in the web collection: %s", e)
        return ToolOutput(
            text="\n\n".join(lines),
            metadata={"count": len(results), "urls": [r["url"] for r in results]},
        )

    def read_url(self, args: ReadUrlArgs, ctx: ToolContext) -> ToolOutput:
        if not args.url.startswith(("http://", "https://")):
            raise InvalidArguments(f"Only http(s) URLs can be read: {args.url}")
        body, content_type = _fetch(args.url, self.request_timeout)
        ctx.token.raise_if_cancelled()
        text = html_to_text(body) if "html" in content_type or "<html" in body[:500].lower() else body
        truncated = len(text) > args.max_chars
        if truncated:
            text = text[: args.max_chars] + f"\n... [page truncated at {args.max_chars} chars]"
        return ToolOutput(text=text, metadata={"url": args.url, "truncated": truncated})


def register_web_tools(
    registry: ToolRegistry,
    search_url: str,
    ingest: Optional[Callable[[str], object]] = None,
) -> WebTools:
    """Register ``web_search`` and ``read_url`` on ``registry``."""
    tools = WebTools(search_url, ingest)
    registry.register(
        ToolSpec(
            name="web_search",
            description="Search the web. Returns titles, URLs and snippets of the top results.",
            args_schema=WebSearchArgs,
            handler=tools.web_search,
            capabilities=frozenset({Capability.NETWORK}),
        )
    )
    registry.register(
        ToolSpec(
            name="read_url",
            description="Fetch a web page and return its readable text.",
            args_schema=ReadUrlArgs,
            handler=tools.read_url,
            capabilities=frozenset({Capability.NETWORK}),
        )
    )
    return tools
