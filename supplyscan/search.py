"""Supplementary context providers: Perplexity web search and page scraping.

Search enrichment is optional for a scan.  :meth:`SearchClient.search` never
raises; it degrades to an empty string when the provider is unconfigured or
failing.  :meth:`SearchClient.ask` and :meth:`ScrapeClient.scrape` do raise,
and the tool layer turns those errors into tool results.
"""
from __future__ import annotations

import logging
import os
from typing import Any

import httpx
from lxml import etree, html as lxml_html

from supplyscan.utils import truncate

log = logging.getLogger(__name__)

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
FIRECRAWL_URL = "https://api.firecrawl.dev/v1/scrape"

_USER_AGENT = "SupplyScanBot/1.0"
_TIMEOUT = 20.0
SCRAPE_MAX_CHARS = 8_000
_SCRAPE_MARKER = "\n\n...[truncated]"

SUPPLY_CHAIN_SYSTEM_PROMPT = "Provide concise factual information about supply chain risks."
RESEARCH_SYSTEM_PROMPT = "Provide concise, factual answers with sources."


class ProviderNotConfigured(RuntimeError):
    """Raised when a provider credential is missing."""


def supply_chain_query(company_name: str, ticker: str) -> str:
    return (
        f"{company_name} ({ticker}) supply chain risks, constraints, bottlenecks, capacity issues. "
        "Focus on: single-source dependencies, lead time changes, capacity utilization, "
        "demand/supply imbalances."
    )


class SearchClient:
    """Perplexity chat-completions search with citations."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "sonar",
        url: str = PERPLEXITY_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
    ):
        self._api_key = (api_key if api_key is not None else os.environ.get("PERPLEXITY_API_KEY", "")).strip()
        self.model = model
        self.url = url
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def ask(
        self, query: str, *, system: str = RESEARCH_SYSTEM_PROMPT, recency: str | None = None,
    ) -> dict[str, Any]:
        """Return ``{"answer": str, "citations": list[str]}`` for *query*."""
        if not self.configured:
            raise ProviderNotConfigured("Perplexity not configured. Set PERPLEXITY_API_KEY.")
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": query},
            ],
        }
        if recency:
            body["search_recency_filter"] = recency
        resp = await self._http.post(
            self.url,
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected search response: {type(data).__name__}")
        choices = data.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else {}
        message = first.get("message") if isinstance(first, dict) else None
        answer = message.get("content") if isinstance(message, dict) else None
        citations = data.get("citations")
        return {
            "answer": answer if isinstance(answer, str) else "",
            "citations": [str(c) for c in citations] if isinstance(citations, list) else [],
        }

    async def search(self, company_name: str, ticker: str) -> str:
        """Month-recency supply-chain answer followed by its sources; "" on any failure."""
        if not self.configured:
            return ""
        try:
            result = await self.ask(
                supply_chain_query(company_name, ticker),
                system=SUPPLY_CHAIN_SYSTEM_PROMPT,
                recency="month",
            )
        except Exception as exc:
            log.warning("Supply chain search failed for %s: %s", ticker, exc)
            return ""
        if not result["answer"]:
            return ""
        return f"{result['answer']}\n\nSources: {', '.join(result['citations'])}"


class ScrapeClient:
    """Main-content extraction for a URL.

    Uses Firecrawl when ``FIRECRAWL_API_KEY`` is set, otherwise a plain
    fetch with lxml text extraction.
    """

    def __init__(
        self,
        api_key: str | None = None,
        url: str = FIRECRAWL_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
    ):
        self._api_key = (api_key if api_key is not None else os.environ.get("FIRECRAWL_API_KEY", "")).strip()
        self.url = url
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def scrape(self, url: str) -> str:
        if not url.startswith(("http://", "https://")):
            url = "https://" + url
        if self._api_key:
            text = await self._firecrawl(url)
        else:
            resp = await self._http.get(url)
            resp.raise_for_status()
            text = extract_text(resp.text)
        return truncate(text, SCRAPE_MAX_CHARS, _SCRAPE_MARKER)

    async def _firecrawl(self, url: str) -> str:
        resp = await self._http.post(
            self.url,
            json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        resp.raise_for_status()
        data = resp.json()
        return (data.get("data") or {}).get("markdown") or data.get("markdown") or ""


def extract_text(raw_html: str) -> str:
    """Extract readable text from HTML using lxml."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    for bad in tree.xpath("//script | //style | //nav | //footer"):
        bad.drop_tree()
    title = " ".join(tree.xpath("//title//text()")).strip()
    headings = [h.strip() for h in tree.xpath("//h1//text() | //h2//text() | //h3//text()") if h.strip()]
    paragraphs = [p.strip() for p in tree.xpath("//p//text() | //li//text()") if p.strip()]

    parts = []
    if title:
        parts.append(f"# {title}")
    if headings:
        parts.append("\n".join(f"## {h}" for h in headings))
    if paragraphs:
        parts.append("\n".join(paragraphs))
    return "\n\n".join(parts)
