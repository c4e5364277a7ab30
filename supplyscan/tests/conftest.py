"""Shared fixtures: in-memory database, seeded roster, fake model completions."""
from __future__ import annotations

import json
from itertools import count
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai.types.chat import ChatCompletion
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from supplyscan.models import Base, Company


@pytest.fixture()
def engine():
    """Uses StaticPool so all connections share the same in-memory database."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(SessionLocal):
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def roster(session):
    companies = [
        Company(id="nvda", ticker="NVDA", name="NVIDIA"),
        Company(id="tsm", ticker="TSM", name="Taiwan Semiconductor"),
        Company(id="asml", ticker="ASML", name="ASML Holding"),
    ]
    session.add_all(companies)
    session.commit()
    return companies


_ids = count(1)


def _completion(content: str | None = None, tool_calls: list[tuple[str, dict | str]] | None = None) -> ChatCompletion:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": f"call_{next(_ids)}",
                "type": "function",
                "function": {
                    "name": name,
                    "arguments": args if isinstance(args, str) else json.dumps(args),
                },
            }
            for name, args in tool_calls
        ]
    return ChatCompletion.model_validate({
        "id": f"chatcmpl-{next(_ids)}",
        "object": "chat.completion",
        "created": 1_760_000_000,
        "model": "test-model",
        "choices": [{
            "index": 0,
            "finish_reason": "tool_calls" if tool_calls else "stop",
            "message": message,
        }],
    })


@pytest.fixture()
def completion():
    """Factory: ``completion(content=..., tool_calls=[(name, args), ...])``."""
    return _completion


@pytest.fixture()
def submit(completion):
    """Factory for a forced ``submit_analysis`` turn."""
    def _submit(scores=(), signals=(), new_relationships=()):
        return completion(tool_calls=[("submit_analysis", {
            "scores": list(scores),
            "signals": list(signals),
            "new_relationships": list(new_relationships),
        })])
    return _submit


@pytest.fixture()
def fake_llm():
    """Stand-in for LLMClient; set ``complete.side_effect`` / ``open_stream.return_value`` per test."""
    llm = MagicMock()
    llm.configured = True
    llm.complete = AsyncMock()
    llm.open_stream = AsyncMock()
    llm.aclose = AsyncMock()
    return llm
