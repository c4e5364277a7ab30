"""Tool-calling orchestration against an OpenAI-compatible model gateway.

Two entry points share one loop:

- :func:`analyze_batch`: scan path.  The model is forced to answer through
  the ``submit_analysis`` tool; its arguments are validated into an
  :class:`~supplyscan.schemas.AnalysisResult`.  Ceiling: 5 iterations.
- :func:`research_chat`: interactive path.  The model may call the research
  toolbox (live market data, transcripts, web search, scraping); once it
  produces a plain answer the transcript is re-issued as a streamed call and
  relayed as server-sent events.  Ceiling: 10 iterations.

Each iteration is a pure step from one transcript (a tuple of message dicts)
to ``Continue(next_transcript) | Final(...) | Failed(reason)``.  Tool
executions never raise into the loop: they produce ``ToolOk``/``ToolErr``
values whose JSON form is fed back to the model.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import openai
from pydantic import ValidationError

from supplyscan.market_data import CompanyFinancials, MarketDataClient
from supplyscan.schemas import AnalysisResult
from supplyscan.search import ScrapeClient, SearchClient
from supplyscan.utils import truncate

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ai.gateway.lovable.dev/v1"
DEFAULT_MODEL = "google/gemini-3-flash-preview"

ANALYSIS_MAX_ITERATIONS = 5
CHAT_MAX_ITERATIONS = 10
TRANSCRIPT_TOOL_MAX_CHARS = 12_000

Message = dict[str, Any]
Transcript = tuple[Message, ...]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LLMCallError(Exception):
    """Model gateway call failed or returned unusable output."""
    status_code = 500

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class RateLimitedError(LLMCallError):
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded. Please try again shortly."):
        super().__init__(message, retryable=True)


class CreditsExhaustedError(LLMCallError):
    status_code = 402

    def __init__(self, message: str = "AI credits exhausted. Add credits to continue."):
        super().__init__(message, retryable=False)


class ToolLoopError(LLMCallError):
    """The conversation did not reach a usable final turn."""


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


class LLMClient:
    """Async chat-completions client for the model gateway."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        self.model = model or os.environ.get("LLM_MODEL", "") or DEFAULT_MODEL
        key = api_key or os.environ.get("LLM_API_KEY", "")
        url = base_url or os.environ.get("LLM_BASE_URL", "") or DEFAULT_BASE_URL
        self.configured = bool(key)
        # No SDK retries: rate limits are surfaced to the caller.
        self._client = openai.AsyncOpenAI(api_key=key or "unset", base_url=url, timeout=timeout, max_retries=0)

    async def aclose(self) -> None:
        await self._client.close()

    async def complete(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> Any:
        """Non-streaming completion; returns the SDK ``ChatCompletion``."""
        kwargs: dict[str, Any] = {}
        if tools:
            kwargs["tools"] = tools
        if tool_choice is not None:
            kwargs["tool_choice"] = tool_choice
        return await self._call(messages, stream=False, **kwargs)

    async def open_stream(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        """Start a streamed completion and return its SSE lines.

        The request is sent before this returns, so gateway errors surface
        here rather than midway through a response.
        """
        stream = await self._call(messages, stream=True)
        return _sse_lines(stream)

    async def _call(self, messages: Sequence[Message], **kwargs: Any) -> Any:
        try:
            return await self._client.chat.completions.create(
                model=self.model, messages=list(messages), **kwargs,
            )
        except openai.RateLimitError as exc:
            raise RateLimitedError() from exc
        except openai.APIStatusError as exc:
            if exc.status_code == 402:
                raise CreditsExhaustedError() from exc
            log.error("AI gateway error %s: %s", exc.status_code, exc.response.text[:500])
            raise LLMCallError("AI service error", retryable=exc.status_code >= 500) from exc
        except openai.APIError as exc:
            log.error("AI gateway unreachable: %s", exc)
            raise LLMCallError("AI service error", retryable=True) from exc


async def _sse_lines(stream: Any) -> AsyncIterator[str]:
    async for chunk in stream:
        yield f"data: {chunk.model_dump_json(exclude_none=True)}\n\n"
    yield "data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


def _function(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


RESEARCH_TOOLS: list[dict[str, Any]] = [
    _function(
        "get_stock_data",
        "Fetch live financial data for a stock ticker: price, market cap, revenue, earnings, "
        "balance sheet, key metrics. Use for any question about a company's financials.",
        {"ticker": {"type": "string", "description": "Stock ticker symbol, e.g. AAPL"}},
        ["ticker"],
    ),
    _function(
        "get_earnings_transcript",
        "Fetch the earnings call transcript for a ticker and fiscal quarter.",
        {
            "ticker": {"type": "string", "description": "Stock ticker symbol"},
            "year": {"type": "integer", "description": "Fiscal year, e.g. 2025"},
            "quarter": {"type": "integer", "description": "Fiscal quarter 1-4"},
        },
        ["ticker", "year", "quarter"],
    ),
    _function(
        "web_search",
        "Search the web for real-time information about stocks, markets, earnings, news, "
        "SEC filings. Returns grounded results with citations.",
        {"query": {"type": "string", "description": "Search query"}},
        ["query"],
    ),
    _function(
        "scrape_page",
        "Scrape and extract the main content of a URL (investor relations page, SEC filing, news article).",
        {"url": {"type": "string", "description": "URL to scrape"}},
        ["url"],
    ),
]

_BREAKDOWN_SCHEMA = {
    "type": "object",
    "properties": {
        "concentration_risk": {"type": "number"},
        "financial_health": {"type": "number"},
        "signal_strength": {"type": "number"},
        "reason": {"type": "string"},
    },
    "required": ["concentration_risk", "financial_health", "signal_strength", "reason"],
}

SUBMIT_ANALYSIS_TOOL: dict[str, Any] = _function(
    "submit_analysis",
    "Submit the complete bottleneck analysis results",
    {
        "scores": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "company_id": {"type": "string"},
                    "bottleneck_score": {"type": "number"},
                    "beneficiary_score": {"type": "number"},
                    "breakdown": _BREAKDOWN_SCHEMA,
                },
                "required": ["company_id", "bottleneck_score", "beneficiary_score", "breakdown"],
            },
        },
        "signals": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "company_id": {"type": "string"},
                    "signal_type": {"type": "string"},
                    "direction": {"type": "string", "enum": ["up", "down", "flat", "unknown"]},
                    "magnitude": {"type": "number"},
                    "summary": {"type": "string"},
                    "source": {"type": "string"},
                },
                "required": ["company_id", "signal_type", "direction", "magnitude", "summary", "source"],
            },
        },
        "new_relationships": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "from_company_id": {"type": "string"},
                    "to_company_id": {"type": "string"},
                    "rel_type": {
                        "type": "string",
                        "enum": ["supplier", "customer", "partner", "competitor", "other"],
                    },
                    "confidence": {"type": "number"},
                    "notes": {"type": "string"},
                },
                "required": ["from_company_id", "to_company_id", "rel_type", "confidence", "notes"],
            },
        },
    },
    ["scores", "signals", "new_relationships"],
)

SUBMIT_ANALYSIS_CHOICE = {"type": "function", "function": {"name": "submit_analysis"}}


# ---------------------------------------------------------------------------
# Tool execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolOk:
    payload: Any

    def to_content(self) -> str:
        return self.payload if isinstance(self.payload, str) else json.dumps(self.payload, default=str)


@dataclass(frozen=True)
class ToolErr:
    message: str

    def to_content(self) -> str:
        return json.dumps({"error": self.message})


ToolResult = ToolOk | ToolErr


class Toolbox:
    """Executes research tool calls against the live data providers."""

    def __init__(self, market: MarketDataClient, search: SearchClient, scraper: ScrapeClient):
        self.market = market
        self.search = search
        self.scraper = scraper
        self._handlers = {
            "get_stock_data": self.get_stock_data,
            "get_earnings_transcript": self.get_earnings_transcript,
            "web_search": self.web_search,
            "scrape_page": self.scrape_page,
        }

    async def execute(self, name: str, arguments: str | None) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolErr(f"Unknown tool: {name}")
        try:
            args = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            return ToolErr(f"Invalid arguments for {name}")
        if not isinstance(args, dict):
            return ToolErr(f"Invalid arguments for {name}")
        try:
            return await handler(**args)
        except Exception as exc:
            log.warning("Tool %s failed: %s", name, exc)
            return ToolErr(str(exc) or "Tool execution failed")

    async def get_stock_data(self, ticker: str) -> ToolResult:
        if not self.market.configured:
            return ToolErr("FMP_API_KEY not configured")
        data = await self.market.get_stock_data(ticker)
        if not data:
            return ToolErr(f"No market data available for {ticker.upper()}")
        return ToolOk(data)

    async def get_earnings_transcript(self, ticker: str, year: int, quarter: int) -> ToolResult:
        if not self.market.configured:
            return ToolErr("FMP_API_KEY not configured")
        text = await self.market.earnings_transcript(ticker.upper(), int(year), int(quarter))
        if text is None:
            return ToolErr(f"No transcript found for {ticker.upper()} Q{quarter} {year}")
        return ToolOk(truncate(text, TRANSCRIPT_TOOL_MAX_CHARS))

    async def web_search(self, query: str) -> ToolResult:
        return ToolOk(await self.search.ask(query))

    async def scrape_page(self, url: str) -> ToolResult:
        return ToolOk(await self.scraper.scrape(url))


# ---------------------------------------------------------------------------
# The loop
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Continue:
    transcript: Transcript


@dataclass(frozen=True)
class Final:
    transcript: Transcript
    content: str | None
    tool_arguments: str | None = None


@dataclass(frozen=True)
class Failed:
    reason: str


Step = Continue | Final | Failed


async def step(
    client: LLMClient,
    toolbox: Toolbox | None,
    transcript: Transcript,
    *,
    tools: list[dict[str, Any]],
    tool_choice: str | dict[str, Any] | None = None,
    terminal_tool: str | None = None,
) -> Step:
    """One model turn.  Tool calls are executed concurrently and appended."""
    completion = await client.complete(transcript, tools=tools, tool_choice=tool_choice)
    if not completion.choices:
        return Failed("No AI response")
    message = completion.choices[0].message
    calls = message.tool_calls or []

    if terminal_tool:
        for call in calls:
            if call.function.name == terminal_tool:
                return Final(transcript, message.content, call.function.arguments)

    if not calls:
        return Final(transcript, message.content)

    async def _run(call: Any) -> Message:
        if toolbox is None:
            result: ToolResult = ToolErr(f"Unknown tool: {call.function.name}")
        else:
            result = await toolbox.execute(call.function.name, call.function.arguments)
        return {"role": "tool", "tool_call_id": call.id, "content": result.to_content()}

    tool_messages = await asyncio.gather(*(_run(c) for c in calls))
    return Continue((*transcript, message.model_dump(exclude_none=True), *tool_messages))


async def run_tool_loop(
    client: LLMClient,
    toolbox: Toolbox | None,
    transcript: Transcript,
    *,
    tools: list[dict[str, Any]],
    max_iterations: int,
    tool_choice: str | dict[str, Any] | None = None,
    terminal_tool: str | None = None,
) -> Final:
    for _ in range(max_iterations):
        outcome = await step(
            client, toolbox, transcript,
            tools=tools, tool_choice=tool_choice, terminal_tool=terminal_tool,
        )
        if isinstance(outcome, Failed):
            raise ToolLoopError(outcome.reason)
        if isinstance(outcome, Final):
            return outcome
        transcript = outcome.transcript
    raise ToolLoopError("Too many tool iterations")


# ---------------------------------------------------------------------------
# Scan path: batch analysis
# ---------------------------------------------------------------------------


def analysis_system_prompt(known_company_ids: Sequence[str], now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"""\
You are an expert AI supply chain risk analyst. Today is {now.strftime('%Y-%m-%d')}. \
The year is {now.year}. Do not infer the current date from your training data.

The financial data, earnings transcripts and news below were fetched live for this run. \
They take precedence over anything you remember about these companies.

Analyze the following companies to identify:
1. **Bottleneck scores** (0-100): How much of a single point of failure is this company in the \
AI infrastructure supply chain? Consider: market share monopoly/duopoly position, number of \
downstream dependents, replaceability, financial fragility.
2. **Beneficiary scores** (0-100): How much does this company benefit from AI infrastructure buildout?
3. **Signals**: Extract specific supply chain signals from earnings transcripts and news \
(demand trends, capacity constraints, lead time changes, pricing pressure, capex plans).
4. **New relationships**: Supplier/customer/partner/competitor relationships you discover \
in the transcripts or news, with a confidence between 0 and 1.

Known company IDs in our system: {", ".join(known_company_ids)}

Only create relationships between companies that exist in our system.

Tool: **submit_analysis**: submit scores, signals and new_relationships in one call. \
Always answer through this tool, never with free text."""


def batch_context(companies: Sequence[CompanyFinancials]) -> str:
    return "\n\n---\n\n".join(c.context_block() for c in companies)


async def analyze_batch(
    client: LLMClient,
    companies: Sequence[CompanyFinancials],
    known_company_ids: Sequence[str],
    toolbox: Toolbox | None = None,
    now: datetime | None = None,
) -> AnalysisResult:
    """Score one batch of companies; raises LLMCallError on any contract violation."""
    transcript: Transcript = (
        {"role": "system", "content": analysis_system_prompt(known_company_ids, now)},
        {"role": "user", "content": batch_context(companies)},
    )
    final = await run_tool_loop(
        client, toolbox, transcript,
        tools=[SUBMIT_ANALYSIS_TOOL],
        tool_choice=SUBMIT_ANALYSIS_CHOICE,
        terminal_tool="submit_analysis",
        max_iterations=ANALYSIS_MAX_ITERATIONS,
    )
    if final.tool_arguments is None:
        raise ToolLoopError("AI did not return structured analysis")
    try:
        return AnalysisResult.model_validate(json.loads(final.tool_arguments))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise LLMCallError(f"AI returned malformed analysis: {str(exc)[:200]}") from exc


# ---------------------------------------------------------------------------
# Chat path
# ---------------------------------------------------------------------------


def chat_system_prompt(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"""\
You are an expert stock and supply chain research analyst embedded in a finance app called \
"AI Supply Chain Intel". The current date and time is {now.isoformat()} (UTC). Do NOT guess \
or approximate the time; use this exact timestamp when asked about the current time.

CRITICAL RULES:
- **ALWAYS call get_stock_data FIRST** when a user asks about any company's price, market cap, \
revenue, earnings, valuation, or any financial metric. NEVER answer financial questions from \
memory, your training data is outdated. Live tool results always win over what you remember.
- After getting live data you may supplement with web_search for context (news, analysis).
- Use scrape_page to extract content from specific URLs the user provides.
- When presenting data, clearly state it came from live API data, not your training knowledge.

Available tools:
1. **get_stock_data**: LIVE price, market cap, revenue, earnings, balance sheet, key metrics.
2. **get_earnings_transcript**: earnings call transcript for a ticker, year and quarter.
3. **web_search**: real-time web search for news, earnings reports, SEC filings, market analysis.
4. **scrape_page**: main content of any URL (investor relations, 10-K filings, news articles).

Format responses with clear markdown: headers, bullet points, tables for financial data. \
Always specify the data source.

If a tool returns an error about not being configured, tell the user which service needs \
to be connected."""


async def research_chat(
    client: LLMClient,
    toolbox: Toolbox,
    messages: Sequence[Message],
    now: datetime | None = None,
) -> AsyncIterator[str]:
    """Run the research tool loop, then stream the final answer as SSE lines."""
    transcript: Transcript = ({"role": "system", "content": chat_system_prompt(now)}, *messages)
    final = await run_tool_loop(
        client, toolbox, transcript,
        tools=RESEARCH_TOOLS,
        max_iterations=CHAT_MAX_ITERATIONS,
    )
    return await client.open_stream(final.transcript)
