"""Tests for API key resolution."""

from llm_gateway.config import get_api_key, get_key_source


class TestGetApiKey:
    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        assert get_api_key("openai_chat", "from-config") == "from-config"
        assert get_key_source("openai_chat") == "config"

    def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        assert get_api_key("anthropic") == "sk-ant"
        assert get_key_source("anthropic") == "environment"

    def test_responses_kind_shares_openai_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        assert get_api_key("openai_responses") == "sk-openai"

    def test_missing_key(self):
        assert get_api_key("openrouter") is None
        assert get_key_source("openrouter") is None

    def test_mock_has_no_key(self):
        assert get_api_key("mock") is None
