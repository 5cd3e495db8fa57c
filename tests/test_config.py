import logging

import pytest

from toolchat.core import config
from toolchat.core.error_handling import (
    AgentCancelledError,
    LLMError,
    ToolNotFoundError,
    setup_logging,
    unexpected_error_response,
)


class TestProvidersConfig:
    def test_known_providers(self):
        assert config.list_providers() == ["openai", "claude", "openrouter", "ollama", "llama_cpp", "vllm"]

    def test_entry_lookup_is_case_insensitive(self):
        assert config.get_provider_entry("OpenAI")["kind"] == config.PUBLIC_KIND
        assert config.get_provider_entry("nope") is None

    def test_local_providers_have_no_base_url(self):
        for provider in ("ollama", "llama_cpp", "vllm"):
            entry = config.get_provider_entry(provider)
            assert entry["kind"] == config.LOCAL_KIND
            assert "base_url" not in entry

    def test_default_model_env_override(self, monkeypatch):
        assert config.get_default_model("vllm") == "meta-llama/Llama-3.2-3B-Instruct"
        monkeypatch.setenv("LLM_MODEL_VLLM", "mistral-7b")
        assert config.get_default_model("vllm") == "mistral-7b"

    def test_default_model_unknown_provider(self):
        with pytest.raises(config.ProvidersConfigError):
            config.get_default_model("gemini")

    def test_invalid_config_file(self, monkeypatch, tmp_path):
        broken = tmp_path / "providers.json"
        broken.write_text('{"providers": {"x": {"kind": "remote", "default_model": "m"}}}')
        monkeypatch.setattr(config, "CONFIG_PATH", broken)
        config.load_providers_config.cache_clear()

        with pytest.raises(config.ProvidersConfigError):
            config.load_providers_config()


class TestSettings:
    def test_defaults(self):
        settings = config.get_settings()

        assert settings.max_turns == 10
        assert settings.tool_call_timeout == 60.0
        assert settings.registry_health_check is True
        assert settings.port == 6000

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_TURNS", "4")
        monkeypatch.setenv("TOOL_CALL_TIMEOUT", "2.5")
        monkeypatch.setenv("REGISTRY_HEALTH_CHECK", "false")
        monkeypatch.setenv("PORT", "7000")

        settings = config.get_settings()

        assert settings.max_turns == 4
        assert settings.tool_call_timeout == 2.5
        assert settings.registry_health_check is False
        assert settings.port == 7000

    def test_invalid_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_TURNS", "many")
        monkeypatch.setenv("LLM_TIMEOUT", "soon")

        settings = config.get_settings()

        assert settings.max_turns == 10
        assert settings.llm_timeout == 120.0

    def test_max_turns_is_at_least_one(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_TURNS", "0")

        assert config.get_settings().max_turns == 1


class TestErrorHandling:
    def test_error_response_shape(self):
        error = ToolNotFoundError("rm")

        assert error.status_code == 404
        assert error.to_response() == {"error": "Tool not found: rm", "error_code": "TOOL_NOT_FOUND"}
        assert error.to_dict()["recoverable"] is False

    def test_llm_error_code_follows_upstream_status(self):
        assert LLMError("slow down", status_code=429).error_code == "LLM_ERROR_429"
        assert LLMError("boom").error_code == "LLM_ERROR_UNKNOWN"

    def test_cancelled_status(self):
        assert AgentCancelledError().status_code == 499

    def test_unexpected_error_response(self):
        assert unexpected_error_response(KeyError())["error"] == "KeyError"

    def test_setup_logging_writes_daily_file(self, tmp_path):
        logger = setup_logging("DEBUG", str(tmp_path / "logs"))
        try:
            logging.getLogger("toolchat.test").info("hello log")
            for handler in logger.handlers:
                handler.flush()

            files = list((tmp_path / "logs").glob("agent_*.log"))
            assert len(files) == 1
            assert "hello log" in files[0].read_text(encoding="utf-8")
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
            logger.propagate = True

    def test_setup_logging_is_idempotent(self):
        logger = setup_logging("INFO")
        setup_logging("INFO")
        try:
            assert len(logger.handlers) == 1
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
            logger.propagate = True
