"""Tests for context-window limits and token estimation."""

from tern.tokens import DEFAULT_TOKEN_LIMIT, rough_count, split_total, token_limit


class TestTokenLimit:
    def test_known_model(self):
        assert token_limit("gemini-1.5-pro") == 2_097_152
        assert token_limit("deepseek-v3") == 32_000

    def test_unknown_model_uses_default(self):
        assert token_limit("mystery-model") == DEFAULT_TOKEN_LIMIT
        assert token_limit("mystery-model", default=4096) == 4096

    def test_override_wins(self):
        assert token_limit("gemini-2.5-pro", {"gemini-2.5-pro": 1000}) == 1000


class TestRoughCount:
    def test_ascii_quarter_token_per_char(self):
        assert rough_count("abcd") == 1
        assert rough_count("abcde") == 2

    def test_cjk_weighs_more(self):
        assert rough_count("中文") == 2  # 0.75 * 2 rounded up

    def test_empty(self):
        assert rough_count("") == 0


def test_split_total():
    assert split_total(100) == (70, 30)
    assert split_total(0) == (0, 0)
