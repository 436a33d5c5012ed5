# tests/unit/test_completion_adapter.py

from __future__ import annotations
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

import pytest

import polychat.providers.openai_adapter as oa  # type: ignore
from polychat.core.accumulator import StreamAccumulator
from polychat.core.iterations import IterationController
from polychat.core.models import GenerationSettings, Message, Result, TextBlock
from polychat.core.normalizer import RawImage, normalize
from polychat.core.resolver import resolve
from polychat.core.stream import DeltaEvent
from polychat.providers.completion_adapter import (
    ASSISTANT, HUMAN, NO_RESPONSE, TextCompletionAdapter, build_prompt, flatten_text,
)


class _FakeChoice:
    def __init__(self, text) -> None:
        self.text = text

class _FakeResponse:
    def __init__(self, text) -> None:
        self.choices = [_FakeChoice(text)]

class _FakeCompletions:
    calls: List[Dict[str, Any]] = []
    answers: List[str] = []

    async def create(self, **kwargs):
        _FakeCompletions.calls.append(kwargs)
        return _FakeResponse(_FakeCompletions.answers.pop(0))

class _FakeAsyncOpenAI:
    closed = 0

    def __init__(self, **_kwargs) -> None:
        self.completions = _FakeCompletions()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        _FakeAsyncOpenAI.closed += 1


@pytest.fixture
def fake_openai(monkeypatch):
    _FakeCompletions.calls = []
    _FakeCompletions.answers = []
    _FakeAsyncOpenAI.closed = 0
    monkeypatch.setattr(oa, "AsyncOpenAI", _FakeAsyncOpenAI, raising=True)
    return _FakeCompletions


def _ctx(**settings):
    return resolve("completion", {"completion": {"api_key": "sk-test"}}, GenerationSettings(**settings),
                   model="gpt-3.5-turbo-instruct")


def test_prompt_has_leading_instruction_and_turns():
    msgs = [Message.text("user", "Hi"), Message.text("assistant", "Hello!"), Message.text("user", "Bye")]
    prompt = build_prompt(msgs, "Be brief.")
    assert prompt == f"Be brief.{HUMAN} Hi{ASSISTANT} Hello!{HUMAN} Bye{ASSISTANT}"
    assert build_prompt([Message.text("user", "Hi")]) == f"{HUMAN} Hi{ASSISTANT}"


def test_images_collapse_to_placeholder_without_touching_history():
    msg = normalize("What is this?", RawImage(data=b"\xff\xd8", media_type="image/jpeg"))
    assert flatten_text(msg) == "What is this?\n[Image]"
    # the original message keeps its image block
    assert msg.content[1].type == "image"


def test_single_shot_emits_only_final(fake_openai):
    fake_openai.answers = [" The answer."]
    adapter = TextCompletionAdapter(model="gpt-3.5-turbo-instruct")

    async def go():
        handle = await adapter.dispatch([Message.text("user", "Q?")], _ctx(stop_sequences=("END",)))
        events = [e async for e in handle]
        return events

    events = asyncio.run(go())
    assert len(events) == 1
    assert not isinstance(events[0], DeltaEvent)
    assert events[0].content == "The answer."

    args = fake_openai.calls[0]
    assert args["prompt"].endswith(ASSISTANT)
    assert args["stop"] == [HUMAN, "END"]
    assert "stream" not in args
    # one client per request, closed with it
    assert _FakeAsyncOpenAI.closed == 1


def test_empty_completion_reports_no_response(fake_openai):
    fake_openai.answers = ["   "]
    adapter = TextCompletionAdapter(model="gpt-3.5-turbo-instruct")

    async def go():
        handle = await adapter.dispatch([Message.text("user", "Q?")], _ctx())
        return [s async for s in StreamAccumulator().consume(handle)]

    assert asyncio.run(go()) == [NO_RESPONSE]


def test_scenario_two_sequential_single_shot_iterations(fake_openai):
    fake_openai.answers = ["Hi! How can I help?", "Hello there."]
    adapter = TextCompletionAdapter(model="gpt-3.5-turbo-instruct")
    ctx = _ctx(temperature=0.25, max_tokens=256, iterations=2)

    results = asyncio.run(IterationController(adapter).run([Message.text("user", "Hello")], ctx, ctx.settings.iterations))

    assert results == [Result(1, "Hi! How can I help?"), Result(2, "Hello there.")]
    assert len(fake_openai.calls) == 2
    assert _FakeAsyncOpenAI.closed == 2
    for args in fake_openai.calls:
        assert args["temperature"] == 0.25
        assert args["max_tokens"] == 256
        assert args["prompt"] == f"{HUMAN} Hello{ASSISTANT}"
