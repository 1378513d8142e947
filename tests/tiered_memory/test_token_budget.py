"""Tests for TokenBudgetManager counting, truncation and mode budgets."""

from __future__ import annotations

import pytest

from tiered_memory.models import ChatMessage
from tiered_memory.token_budget import (
    DEEP_CONTEXT_BUDGET,
    DEFAULT_CONTEXT_BUDGET,
    FAST_CONTEXT_BUDGET,
    TokenBudgetManager,
)


class TestCount:
    def test_empty_text_is_zero(self, tokens):
        assert tokens.count("") == 0

    def test_non_empty_text_is_positive(self, tokens):
        assert tokens.count("Hello world") > 0

    def test_longer_text_has_more_tokens(self, tokens):
        short = tokens.count("word " * 5)
        long = tokens.count("word " * 50)
        assert long > short

    def test_count_is_memoized(self, tokens):
        first = tokens.count("cached sentence for counting")
        assert tokens.count("cached sentence for counting") == first
        assert tokens.clear_cache() >= 1

    def test_estimate_is_quarter_length(self):
        assert TokenBudgetManager.estimate("abcdefgh") == 2
        assert TokenBudgetManager.estimate("abcdefghi") == 3

    def test_cjk_estimation_counts_more_per_char(self):
        english = TokenBudgetManager._estimate_tokens("abcdefgh")
        korean = TokenBudgetManager._estimate_tokens("가나다라마바사아")
        assert korean > english


class TestCountChat:
    def test_adds_overhead_per_message(self, tokens):
        messages = [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi"},
        ]
        content_tokens = tokens.count("Hello") + tokens.count("Hi")
        assert tokens.count_chat(messages) == content_tokens + 2 * 4 + 2

    def test_accepts_chat_messages(self, tokens):
        messages = [ChatMessage(role="user", content="Hello")]
        assert tokens.count_chat(messages) == tokens.count("Hello") + 4 + 2

    def test_multimodal_image_costs_fixed_tokens(self, tokens):
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": "Look"},
                {"type": "image_url", "image_url": {"url": "data:..."}},
            ],
        }]
        assert tokens.count_chat(messages) == tokens.count("Look") + 85 + 4 + 2

    def test_unsupported_content_falls_back(self, tokens):
        messages = [{"role": "user", "content": 12345}]
        assert tokens.count_chat(messages) == tokens.count("12345") + 4


class TestTruncateToFit:
    def test_short_text_unchanged(self, tokens):
        assert tokens.truncate_to_fit("short text", 100) == "short text"

    def test_zero_budget_returns_empty(self, tokens):
        assert tokens.truncate_to_fit("anything at all", 0) == ""

    @pytest.mark.parametrize("max_tokens", [5, 20, 50])
    def test_result_never_exceeds_budget(self, tokens, max_tokens):
        text = "The quick brown fox jumps over the lazy dog. " * 40
        result = tokens.truncate_to_fit(text, max_tokens)
        assert tokens.count(result) <= max_tokens
        assert result.endswith("...")

    def test_truncated_prefix_matches_original(self, tokens):
        text = "alpha beta gamma delta " * 30
        result = tokens.truncate_to_fit(text, 10)
        assert text.startswith(result[:-3])


class TestBudgetFor:
    @pytest.mark.parametrize(
        "mode, expected",
        [
            ("fast", FAST_CONTEXT_BUDGET),
            ("quick", FAST_CONTEXT_BUDGET),
            ("deep", DEEP_CONTEXT_BUDGET),
            ("RESEARCH", DEEP_CONTEXT_BUDGET),
            ("balanced", DEFAULT_CONTEXT_BUDGET),
            (None, DEFAULT_CONTEXT_BUDGET),
        ],
    )
    def test_mode_lookup(self, mode, expected):
        assert TokenBudgetManager.budget_for(mode) == expected

    def test_returns_copy(self):
        budget = TokenBudgetManager.budget_for("fast")
        budget.total = 1
        assert FAST_CONTEXT_BUDGET.total == 4000

    @pytest.mark.parametrize(
        "budget", [FAST_CONTEXT_BUDGET, DEFAULT_CONTEXT_BUDGET, DEEP_CONTEXT_BUDGET]
    )
    def test_sub_budgets_sum_to_total(self, budget):
        assert (
            budget.full_messages
            + budget.compressed_messages
            + budget.session_summary
            + budget.reserved
        ) == budget.total
