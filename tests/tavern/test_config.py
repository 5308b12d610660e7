"""Tests for settings loading.

Run with:  python -m pytest tests/tavern/test_config.py -v
"""

import os

import pytest

from tavern.config import GenerationSettings, get_tavern_home, load_env_files, load_settings
from tavern.errors import ConfigValidationError


@pytest.fixture(autouse=True)
def tavern_home(tmp_path, monkeypatch):
    monkeypatch.setenv("TAVERN_HOME", str(tmp_path))
    for name in ("TAVERN_BACKEND", "TAVERN_MODEL", "TAVERN_MAX_CONTEXT"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestLoadSettings:
    def test_defaults_without_a_file(self, tavern_home):
        settings = load_settings(load_env=False)
        assert settings.backend == "openrouter"
        assert settings.max_context == 8192
        assert get_tavern_home() == tavern_home

    def test_reads_nested_yaml(self, tavern_home):
        (tavern_home / "config.yaml").write_text(
            "backend: koboldcpp\n"
            "max_context: 4096\n"
            "instruct:\n"
            "  enabled: true\n"
            "  input_sequence: '[INST]'\n"
            "prompts:\n"
            "  names_behavior: content\n",
            encoding="utf-8",
        )
        settings = load_settings(load_env=False)
        assert settings.backend == "koboldcpp"
        assert settings.max_context == 4096
        assert settings.instruct.enabled
        assert settings.instruct.input_sequence == "[INST]"
        assert settings.prompts.names_behavior.value == "content"

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "other.yaml"
        path.write_text("model: tiny\n", encoding="utf-8")
        assert load_settings(path, load_env=False).model == "tiny"

    def test_env_overrides_the_file(self, tavern_home, monkeypatch):
        (tavern_home / "config.yaml").write_text("backend: openai\nmax_context: 4096\n", encoding="utf-8")
        monkeypatch.setenv("TAVERN_BACKEND", "claude")
        monkeypatch.setenv("TAVERN_MAX_CONTEXT", "16384")
        settings = load_settings(load_env=False)
        assert settings.backend == "claude"
        assert settings.max_context == 16384

    @pytest.mark.parametrize("content", ["backend: [unclosed\n", "- just\n- a list\n", "max_context: 0\n"])
    def test_invalid_config(self, tavern_home, content):
        (tavern_home / "config.yaml").write_text(content, encoding="utf-8")
        with pytest.raises(ConfigValidationError):
            load_settings(load_env=False)

    def test_env_file_in_home_is_loaded(self, tavern_home):
        (tavern_home / ".env").write_text("TAVERN_TEST_SECRET=from-home\n", encoding="utf-8")
        try:
            load_env_files(tavern_home)
            assert os.environ["TAVERN_TEST_SECRET"] == "from-home"
        finally:
            os.environ.pop("TAVERN_TEST_SECRET", None)


class TestGenerationSettings:
    def test_prompt_budget(self):
        settings = GenerationSettings(max_context=1000, response_length=200, token_padding=50)
        assert settings.prompt_budget == 750

    def test_prompt_budget_never_negative(self):
        assert GenerationSettings(max_context=100, response_length=200).prompt_budget == 0

    def test_chats_dir(self, tavern_home, tmp_path):
        assert GenerationSettings().resolved_chats_dir() == tavern_home / "chats"
        assert GenerationSettings(chats_dir=tmp_path / "x").resolved_chats_dir() == tmp_path / "x"
