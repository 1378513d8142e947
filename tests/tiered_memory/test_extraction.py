"""Tests for the LLM-based MemoryWriter."""

from __future__ import annotations

import json

import pytest

from tiered_memory.config import ExtractionMode
from tiered_memory.extraction import MemoryWriter, build_writer_prompt
from tiered_memory.models import MemoryFact

VALID_RESPONSE = json.dumps({
    "sessionFacts": [
        {"type": "constraint", "key": "region", "value": "Texas", "importance": 0.8},
        {"type": "topic", "key": "subject", "value": "sales", "importance": 0.4},
    ],
    "userFacts": [
        {"type": "preference", "key": "format", "value": "prefers tables", "importance": 0.7},
    ],
})


@pytest.fixture
def writer(mock_llm):
    return MemoryWriter(mock_llm)


class TestBuildPrompt:
    def test_includes_turn_and_mode(self):
        prompt = build_writer_prompt("Show Texas sales", "Here they are", ExtractionMode.CONSERVATIVE)
        assert "USER QUESTION:\nShow Texas sales" in prompt
        assert "ASSISTANT ANSWER:\nHere they are" in prompt
        assert "Extraction mode: conservative" in prompt
        assert "Only extract highly confident, explicit facts." in prompt

    def test_answer_truncated(self):
        prompt = build_writer_prompt("q", "a" * 1500, ExtractionMode.BALANCED)
        assert "a" * 1000 in prompt
        assert "a" * 1001 not in prompt


class TestExtract:
    @pytest.mark.asyncio
    async def test_parses_facts(self, writer, mock_llm):
        mock_llm.chat.return_value = VALID_RESPONSE
        output = await writer.extract("Show Texas sales", "Here they are", "balanced")

        assert [f.key for f in output.session_facts] == ["region", "subject"]
        assert output.session_facts[0].type == "constraint"
        assert output.user_facts[0].value == "prefers tables"
        assert mock_llm.chat.call_args.kwargs["temperature"] == 0.2
        assert mock_llm.chat.call_args.kwargs["max_tokens"] == 500

    @pytest.mark.asyncio
    async def test_llm_failure_yields_empty(self, writer, mock_llm):
        mock_llm.chat.side_effect = RuntimeError("llm down")
        output = await writer.extract("q", "a")
        assert output.session_facts == []
        assert output.user_facts == []

    @pytest.mark.asyncio
    async def test_no_llm_yields_empty(self):
        output = await MemoryWriter(None).extract("q", "a")
        assert output.session_facts == []

    @pytest.mark.asyncio
    async def test_invalid_mode_rejected(self, writer):
        with pytest.raises(ValueError):
            await writer.extract("q", "a", "reckless")


class TestParseResponse:
    def test_code_fences_tolerated(self):
        output = MemoryWriter.parse_response(f"```json\n{VALID_RESPONSE}\n```")
        assert len(output.session_facts) == 2

    def test_malformed_json(self):
        output = MemoryWriter.parse_response("{not json")
        assert output.session_facts == []
        assert output.user_facts == []

    def test_non_object_json(self):
        assert MemoryWriter.parse_response("[1, 2]").session_facts == []

    def test_empty_response(self):
        assert MemoryWriter.parse_response("").user_facts == []

    def test_skips_malformed_entries(self):
        raw = json.dumps({
            "sessionFacts": [
                {"key": "", "value": "x"},
                {"key": "k"},
                "not a dict",
                {"key": "ok", "value": "kept"},
            ],
            "userFacts": "not a list",
        })
        output = MemoryWriter.parse_response(raw)
        assert [f.key for f in output.session_facts] == ["ok"]
        assert output.user_facts == []

    def test_importance_defaults_and_clamps(self):
        raw = json.dumps({
            "sessionFacts": [
                {"key": "a", "value": "1"},
                {"key": "b", "value": "2", "importance": 7},
                {"key": "c", "value": "3", "importance": "high"},
            ],
            "userFacts": [],
        })
        facts = MemoryWriter.parse_response(raw).session_facts
        assert [f.importance for f in facts] == [0.5, 1.0, 0.5]

    def test_summary_extracted(self):
        raw = json.dumps({"sessionFacts": [], "userFacts": [], "summary": "  Texas sales  "})
        assert MemoryWriter.parse_response(raw).summary == "Texas sales"


class TestFilterByThreshold:
    @pytest.mark.parametrize(
        "mode, expected",
        [
            (ExtractionMode.CONSERVATIVE, ["high"]),
            (ExtractionMode.BALANCED, ["high", "mid"]),
            (ExtractionMode.AGGRESSIVE, ["high", "mid", "low"]),
        ],
    )
    def test_thresholds(self, mode, expected):
        facts = [
            MemoryFact(key="high", value="x", importance=0.8),
            MemoryFact(key="mid", value="x", importance=0.5),
            MemoryFact(key="low", value="x", importance=0.3),
            MemoryFact(key="none", value="x", importance=0.1),
        ]
        kept = MemoryWriter.filter_by_threshold(facts, mode)
        assert [f.key for f in kept] == expected

    def test_accepts_string_mode(self):
        facts = [MemoryFact(key="k", value="v", importance=0.6)]
        assert MemoryWriter.filter_by_threshold(facts, "balanced") == facts
