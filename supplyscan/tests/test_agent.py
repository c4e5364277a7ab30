"""Tool-calling loop, toolbox and model-gateway error mapping."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from supplyscan.agent import (
    ANALYSIS_MAX_ITERATIONS,
    Continue,
    CreditsExhaustedError,
    Final,
    LLMCallError,
    LLMClient,
    RateLimitedError,
    ToolErr,
    ToolLoopError,
    ToolOk,
    Toolbox,
    analysis_system_prompt,
    analyze_batch,
    research_chat,
    run_tool_loop,
    step,
)
from supplyscan.market_data import CompanyFinancials, MarketDataClient
from supplyscan.search import ScrapeClient, SearchClient

SYSTEM = ({"role": "system", "content": "sys"}, {"role": "user", "content": "hi"})


def _toolbox(fmp_handler=None, search_key="") -> Toolbox:
    fmp_handler = fmp_handler or (lambda r: httpx.Response(404, json={}))
    return Toolbox(
        MarketDataClient(api_key="k", transport=httpx.MockTransport(fmp_handler)),
        SearchClient(api_key=search_key),
        ScrapeClient(api_key=""),
    )


class TestStep:
    @pytest.mark.asyncio
    async def test_plain_answer_is_final(self, fake_llm, completion):
        fake_llm.complete.return_value = completion(content="done")
        outcome = await step(fake_llm, None, SYSTEM, tools=[])
        assert isinstance(outcome, Final)
        assert outcome.content == "done"
        assert outcome.transcript == SYSTEM

    @pytest.mark.asyncio
    async def test_tool_calls_are_executed_and_appended(self, fake_llm, completion):
        fake_llm.complete.return_value = completion(tool_calls=[
            ("get_stock_data", {"ticker": "NVDA"}),
            ("web_search", {"query": "HBM supply"}),
        ])
        toolbox = MagicMock()
        toolbox.execute = AsyncMock(side_effect=[ToolOk({"price": 1}), ToolErr("boom")])

        outcome = await step(fake_llm, toolbox, SYSTEM, tools=[])

        assert isinstance(outcome, Continue)
        assistant, first, second = outcome.transcript[2:]
        assert assistant["role"] == "assistant"
        assert len(assistant["tool_calls"]) == 2
        assert first["role"] == "tool"
        assert first["tool_call_id"] == assistant["tool_calls"][0]["id"]
        assert json.loads(first["content"]) == {"price": 1}
        assert json.loads(second["content"]) == {"error": "boom"}

    @pytest.mark.asyncio
    async def test_no_choices_fails(self, fake_llm, completion):
        empty = completion(content="x").model_copy(update={"choices": []})
        fake_llm.complete.return_value = empty
        with pytest.raises(ToolLoopError, match="No AI response"):
            await run_tool_loop(fake_llm, None, SYSTEM, tools=[], max_iterations=3)


class TestRunToolLoop:
    @pytest.mark.asyncio
    async def test_continues_until_final(self, fake_llm, completion):
        fake_llm.complete.side_effect = [
            completion(tool_calls=[("get_stock_data", {"ticker": "NVDA"})]),
            completion(content="NVDA trades at 1"),
        ]
        toolbox = MagicMock()
        toolbox.execute = AsyncMock(return_value=ToolOk({"price": 1}))

        final = await run_tool_loop(fake_llm, toolbox, SYSTEM, tools=[], max_iterations=5)

        assert final.content == "NVDA trades at 1"
        assert len(final.transcript) == 4
        second_call_messages = fake_llm.complete.await_args_list[1].args[0]
        assert second_call_messages[-1]["role"] == "tool"

    @pytest.mark.asyncio
    async def test_ceiling_raises(self, fake_llm, completion):
        fake_llm.complete.side_effect = lambda *a, **kw: completion(
            tool_calls=[("web_search", {"query": "again"})]
        )
        toolbox = MagicMock()
        toolbox.execute = AsyncMock(return_value=ToolOk("more"))

        with pytest.raises(ToolLoopError, match="Too many tool iterations"):
            await run_tool_loop(fake_llm, toolbox, SYSTEM, tools=[], max_iterations=3)
        assert fake_llm.complete.await_count == 3


class TestToolbox:
    @pytest.mark.asyncio
    async def test_get_stock_data_404_is_error_result(self):
        toolbox = _toolbox()
        result = await toolbox.execute("get_stock_data", json.dumps({"ticker": "zzzz"}))
        assert json.loads(result.to_content()) == {"error": "No market data available for ZZZZ"}

    @pytest.mark.asyncio
    async def test_get_stock_data_success(self):
        def handler(request):
            if request.url.path == "/stable/quote":
                return httpx.Response(200, json=[{"symbol": "NVDA", "price": 1}])
            return httpx.Response(404)
        result = await _toolbox(handler).execute("get_stock_data", '{"ticker": "NVDA"}')
        assert isinstance(result, ToolOk)
        assert json.loads(result.to_content()) == {"quote": {"symbol": "NVDA", "price": 1}}

    @pytest.mark.asyncio
    async def test_transcript_tool_truncates(self):
        def handler(request):
            return httpx.Response(200, json=[{"content": "t" * 20_000}])
        result = await _toolbox(handler).execute(
            "get_earnings_transcript", '{"ticker": "nvda", "year": 2025, "quarter": 2}',
        )
        assert isinstance(result, ToolOk)
        assert result.payload.startswith("t" * 12_000)
        assert result.payload.endswith("...[truncated]")

    @pytest.mark.asyncio
    async def test_unconfigured_search_is_error_result(self):
        result = await _toolbox().execute("web_search", '{"query": "TSMC capacity"}')
        assert isinstance(result, ToolErr)
        assert "PERPLEXITY_API_KEY" in result.message

    @pytest.mark.asyncio
    async def test_unknown_tool_and_bad_arguments(self):
        toolbox = _toolbox()
        assert (await toolbox.execute("delete_everything", "{}")).message == "Unknown tool: delete_everything"
        assert isinstance(await toolbox.execute("get_stock_data", "{not json"), ToolErr)
        assert isinstance(await toolbox.execute("get_stock_data", "[1, 2]"), ToolErr)
        # missing required argument surfaces as a TypeError inside the handler call
        assert isinstance(await toolbox.execute("get_stock_data", "{}"), ToolErr)


def _financials():
    return [
        CompanyFinancials(ticker="NVDA", company_id="nvda", quote={"price": 1}),
        CompanyFinancials(ticker="TSM", company_id="tsm", news="Capacity sold out through 2026."),
    ]


class TestAnalyzeBatch:
    @pytest.mark.asyncio
    async def test_parses_and_normalizes_submission(self, fake_llm, submit):
        fake_llm.complete.return_value = submit(
            scores=[{"company_id": "nvda", "bottleneck_score": 140, "beneficiary_score": 80,
                     "breakdown": {"concentration_risk": 90, "financial_health": 70,
                                   "signal_strength": 60, "reason": "sole supplier"}}],
            signals=[{"company_id": "tsm", "signal_type": "capacity", "direction": "UP",
                      "magnitude": 0.8, "summary": "sold out", "source": "news"}],
            new_relationships=[{"from_company_id": "tsm", "to_company_id": "nvda", "rel_type": "vendor",
                                "confidence": 1.7, "notes": "foundry"}],
        )

        result = await analyze_batch(fake_llm, _financials(), ["nvda", "tsm"])

        assert result.scores[0].bottleneck_score == 100
        assert result.signals[0].direction == "up"
        assert result.new_relationships[0].rel_type == "other"
        assert result.new_relationships[0].confidence == 1.0

        messages = fake_llm.complete.await_args.args[0]
        assert "nvda, tsm" in messages[0]["content"]
        assert "## TSM (ID: tsm)" in messages[1]["content"]
        assert "Capacity sold out" in messages[1]["content"]
        kwargs = fake_llm.complete.await_args.kwargs
        assert kwargs["tool_choice"] == {"type": "function", "function": {"name": "submit_analysis"}}
        assert [t["function"]["name"] for t in kwargs["tools"]] == ["submit_analysis"]

    @pytest.mark.asyncio
    async def test_plain_text_answer_is_rejected(self, fake_llm, completion):
        fake_llm.complete.return_value = completion(content="NVDA looks risky")
        with pytest.raises(LLMCallError, match="did not return structured analysis"):
            await analyze_batch(fake_llm, _financials(), ["nvda", "tsm"])

    @pytest.mark.asyncio
    async def test_malformed_arguments_are_rejected(self, fake_llm, completion):
        fake_llm.complete.return_value = completion(tool_calls=[("submit_analysis", "{broken")])
        with pytest.raises(LLMCallError, match="malformed"):
            await analyze_batch(fake_llm, _financials(), ["nvda"])

    @pytest.mark.asyncio
    async def test_stray_tool_call_gets_error_then_submission(self, fake_llm, completion, submit):
        fake_llm.complete.side_effect = [
            completion(tool_calls=[("web_search", {"query": "x"})]),
            submit(),
        ]
        result = await analyze_batch(fake_llm, _financials(), ["nvda", "tsm"])
        assert result.scores == []
        retry_messages = fake_llm.complete.await_args_list[1].args[0]
        assert json.loads(retry_messages[-1]["content"]) == {"error": "Unknown tool: web_search"}

    @pytest.mark.asyncio
    async def test_stops_at_analysis_ceiling(self, fake_llm, completion):
        fake_llm.complete.side_effect = lambda *a, **kw: completion(tool_calls=[("web_search", {"query": "x"})])
        with pytest.raises(ToolLoopError):
            await analyze_batch(fake_llm, _financials(), ["nvda"])
        assert fake_llm.complete.await_count == ANALYSIS_MAX_ITERATIONS

    def test_prompt_states_date(self):
        prompt = analysis_system_prompt(["nvda"], datetime(2026, 3, 4, tzinfo=UTC))
        assert "Today is 2026-03-04" in prompt
        assert "submit_analysis" in prompt


class TestResearchChat:
    @pytest.mark.asyncio
    async def test_final_turn_is_reissued_as_stream(self, fake_llm, completion):
        async def _lines():
            yield 'data: {"choices": []}\n\n'
            yield "data: [DONE]\n\n"

        fake_llm.complete.side_effect = [
            completion(tool_calls=[("get_stock_data", {"ticker": "NVDA"})]),
            completion(content="draft"),
        ]
        fake_llm.open_stream.return_value = _lines()
        toolbox = MagicMock()
        toolbox.execute = AsyncMock(return_value=ToolOk({"price": 1}))

        stream = await research_chat(fake_llm, toolbox, [{"role": "user", "content": "NVDA price?"}])
        lines = [line async for line in stream]

        assert lines[-1] == "data: [DONE]\n\n"
        streamed_transcript = fake_llm.open_stream.await_args.args[0]
        assert streamed_transcript[0]["role"] == "system"
        assert streamed_transcript[1] == {"role": "user", "content": "NVDA price?"}
        assert streamed_transcript[-1]["role"] == "tool"
        tool_names = [t["function"]["name"] for t in fake_llm.complete.await_args.kwargs["tools"]]
        assert tool_names == ["get_stock_data", "get_earnings_transcript", "web_search", "scrape_page"]


def _status_error(cls, status: int):
    response = httpx.Response(status, request=httpx.Request("POST", "https://gateway.test/chat/completions"))
    return cls(f"status {status}", response=response, body=None)


class TestLLMClientErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc, expected, status",
        [
            (_status_error(openai.RateLimitError, 429), RateLimitedError, 429),
            (_status_error(openai.APIStatusError, 402), CreditsExhaustedError, 402),
            (_status_error(openai.InternalServerError, 503), LLMCallError, 500),
        ],
    )
    async def test_gateway_statuses_are_classified(self, exc, expected, status):
        client = LLMClient(model="m", api_key="k", base_url="https://gateway.test")
        with patch.object(client._client.chat.completions, "create", AsyncMock(side_effect=exc)):
            with pytest.raises(expected) as info:
                await client.complete([{"role": "user", "content": "hi"}])
        assert type(info.value) is expected
        assert info.value.status_code == status

    @pytest.mark.asyncio
    async def test_messages_are_actionable(self):
        assert str(RateLimitedError()) == "Rate limit exceeded. Please try again shortly."
        assert str(CreditsExhaustedError()) == "AI credits exhausted. Add credits to continue."
        assert RateLimitedError().retryable is True

    def test_configured_reflects_key(self, monkeypatch):
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        assert LLMClient(api_key="").configured is False
        assert LLMClient(api_key="k").configured is True
