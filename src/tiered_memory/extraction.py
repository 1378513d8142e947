"""LLM-based memory writer.

Extracts session-scoped and user-scoped facts from a single conversation
turn. Any provider or parsing failure degrades to an empty result so a
turn never fails because of extraction.
"""

from __future__ import annotations

import json

from loguru import logger
from pydantic import ValidationError

from .config import EXTRACTION_THRESHOLDS, ExtractionMode, TimeoutConfig
from .models import FactType, MemoryFact, MemoryWriterOutput
from .providers import ChatProvider, call_with_timeout

LLM_ROLE = "memory_extractor"

WRITER_SYSTEM_PROMPT = (
    "You are a memory extraction system. Extract facts and respond ONLY with "
    'valid JSON in this format: {"sessionFacts": [{"key": "name", "value": '
    '"John", "importance": 0.8}], "userFacts": []}'
)

_MODE_GUIDANCE = {
    ExtractionMode.CONSERVATIVE: "Only extract highly confident, explicit facts.",
    ExtractionMode.BALANCED: "Extract clear facts with moderate confidence.",
    ExtractionMode.AGGRESSIVE: "Extract all potential facts including implicit ones.",
}

_ANSWER_CHARS = 1000


def build_writer_prompt(user_message: str, answer: str, mode: ExtractionMode) -> str:
    """Build the extraction prompt for one user/assistant exchange."""
    return f"""\
You are a memory extraction system. Analyze this conversation turn and extract any facts worth remembering.

USER QUESTION:
{user_message}

ASSISTANT ANSWER:
{answer[:_ANSWER_CHARS]}

Extract memories into these categories:

1. SESSION FACTS (temporary, for this conversation only):
   - Constraints mentioned (e.g., "looking at Texas counties")
   - Specific topics being discussed
   - Contextual preferences

2. USER FACTS (long-term, across all conversations):
   - Persistent preferences (e.g., "prefers data in tables")
   - Expertise areas
   - Goals or use cases
   - Must-have or never conditions

Extraction mode: {mode.value}
{_MODE_GUIDANCE[mode]}

Only extract clear, specific facts. Don't extract vague or generic statements.

Respond with ONLY valid JSON (no markdown):
{{
  "sessionFacts": [
    {{ "type": "constraint", "key": "region", "value": "Texas", "importance": 0.8 }}
  ],
  "userFacts": [
    {{ "type": "preference", "key": "format", "value": "prefers tables over text", "importance": 0.7 }}
  ]
}}"""


class MemoryWriter:
    """Turns a conversation turn into structured memory facts."""

    def __init__(self, llm: ChatProvider | None, timeouts: TimeoutConfig | None = None):
        self._llm = llm
        self._timeouts = timeouts or TimeoutConfig()

    async def extract(
        self,
        user_message: str,
        answer: str,
        mode: ExtractionMode | str = ExtractionMode.BALANCED,
    ) -> MemoryWriterOutput:
        """Extract facts from one turn.

        Args:
            user_message: The user's latest message
            answer: The assistant's answer (only the first 1000 chars are used)
            mode: Extraction aggressiveness

        Returns:
            Extracted facts; empty on any failure
        """
        if self._llm is None:
            logger.debug("No chat provider configured, skipping extraction")
            return MemoryWriterOutput()

        mode = ExtractionMode(mode)
        prompt = build_writer_prompt(user_message, answer, mode)

        try:
            response = await call_with_timeout(
                self._llm.chat(
                    LLM_ROLE,
                    [
                        {"role": "system", "content": WRITER_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0.2,
                    max_tokens=500,
                ),
                self._timeouts.llm_seconds,
                "llm",
            )
        except Exception as e:
            logger.warning(f"LLM extraction call failed: {e}")
            return MemoryWriterOutput()

        logger.debug(f"Extraction response: {(response or '')[:50]!r}")
        return self.parse_response(response or "")

    @staticmethod
    def parse_response(raw: str) -> MemoryWriterOutput:
        """Parse the writer's JSON reply.

        Markdown code fences are tolerated. Malformed entries are skipped;
        a malformed document yields an empty result.
        """
        text = raw.strip()
        if text.startswith("```"):
            first_newline = text.find("\n")
            if first_newline != -1:
                text = text[first_newline + 1:]
            if text.endswith("```"):
                text = text[:-3].strip()

        if not text:
            return MemoryWriterOutput()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse extraction JSON: {e}")
            return MemoryWriterOutput()

        if not isinstance(data, dict):
            logger.warning(f"Extraction expected JSON object, got {type(data).__name__}")
            return MemoryWriterOutput()

        summary = data.get("summary")
        return MemoryWriterOutput(
            session_facts=_parse_facts(data.get("sessionFacts")),
            user_facts=_parse_facts(data.get("userFacts")),
            summary=summary.strip() if isinstance(summary, str) and summary.strip() else None,
        )

    @staticmethod
    def filter_by_threshold(
        facts: list[MemoryFact], mode: ExtractionMode | str
    ) -> list[MemoryFact]:
        """Keep facts whose importance meets the mode's threshold."""
        threshold = EXTRACTION_THRESHOLDS[ExtractionMode(mode)]
        return [f for f in facts if f.importance >= threshold]


def _parse_facts(items: object) -> list[MemoryFact]:
    if not isinstance(items, list):
        return []

    facts: list[MemoryFact] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("key") in (None, "") or item.get("value") in (None, ""):
            continue
        try:
            facts.append(MemoryFact(
                type=item.get("type") or FactType.PREFERENCE.value,
                key=item["key"],
                value=item["value"],
                importance=item.get("importance", 0.5),
            ))
        except ValidationError as e:
            logger.debug(f"Skipping malformed extracted fact: {e}")
    return facts
