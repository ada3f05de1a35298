"""Tests for remediator.llm - provider factory and model backend."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from remediator.llm import ModelBackend, create_llm


class TestCreateLLM:
    @pytest.mark.parametrize("provider", ["openai", "litellm"])
    def test_openai_compatible(self, provider, monkeypatch):
        from remediator.config import settings

        monkeypatch.setattr(settings, "llm_provider", provider)
        monkeypatch.setattr(settings, "llm_base_url", "http://litellm:4000")
        with patch("remediator.llm.ChatOpenAI") as chat:
            create_llm()
        kwargs = chat.call_args.kwargs
        assert kwargs["base_url"] == "http://litellm:4000"
        assert kwargs["temperature"] == settings.llm_temperature

    def test_ollama_defaults(self, monkeypatch):
        from remediator.config import settings

        monkeypatch.setattr(settings, "llm_provider", "ollama")
        monkeypatch.setattr(settings, "llm_base_url", None)
        monkeypatch.setattr(settings, "llm_api_key", None)
        with patch("remediator.llm.ChatOpenAI") as chat:
            create_llm()
        kwargs = chat.call_args.kwargs
        assert kwargs["base_url"] == "http://localhost:11434/v1"
        assert kwargs["api_key"] == "ollama"

    def test_unknown_provider(self, monkeypatch):
        from remediator.config import settings

        monkeypatch.setattr(settings, "llm_provider", "palm")
        with pytest.raises(ValueError, match="Unsupported LLM provider"):
            create_llm()


class TestModelBackend:
    @pytest.mark.asyncio
    async def test_send_returns_text(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=MagicMock(content='{"analysis": "x"}'))
        backend = ModelBackend(llm=llm, system_prompt="be careful")

        text = await backend.send("what is wrong?")

        assert text == '{"analysis": "x"}'
        messages = llm.ainvoke.call_args.args[0]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "what is wrong?"

    @pytest.mark.asyncio
    async def test_content_blocks_joined(self):
        llm = MagicMock()
        blocks = [{"type": "text", "text": '{"a": '}, {"type": "tool_use"}, {"type": "text", "text": "1}"}]
        llm.ainvoke = AsyncMock(return_value=MagicMock(content=blocks))

        assert await ModelBackend(llm=llm).send("p") == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_timeout_propagates(self):
        async def slow(messages):
            await asyncio.sleep(5)

        llm = MagicMock()
        llm.ainvoke = slow

        with pytest.raises(asyncio.TimeoutError):
            await ModelBackend(llm=llm).send("p", timeout=0.01)

    @pytest.mark.asyncio
    async def test_backend_error_propagates(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ConnectionError):
            await ModelBackend(llm=llm).send("p")
