"""LLM provider factory and model backend for Cluster Remediator.

Supports multiple LLM backends: OpenAI, Anthropic, Azure OpenAI, Ollama, and LiteLLM.
"""

import asyncio
from typing import Any, Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import settings
from .metrics import remediator_model_calls_total
from .prompts import SYSTEM_PROMPT

logger = structlog.get_logger(__name__)


def create_llm():
    """Create the appropriate LangChain chat model based on settings.llm_provider.

    Supported providers:
    - openai: Direct OpenAI API or OpenAI-compatible (default)
    - litellm: LiteLLM proxy (OpenAI-compatible)
    - anthropic: Anthropic Claude models
    - azure_openai: Azure OpenAI Service
    - ollama: Local Ollama instance
    """
    provider = settings.llm_provider.lower()
    kwargs: dict[str, Any] = {
        "model": settings.llm_model,
        "temperature": settings.llm_temperature,
    }

    if provider in ("openai", "litellm"):
        if settings.llm_api_key:
            kwargs["api_key"] = settings.llm_api_key
        if settings.llm_base_url:
            kwargs["base_url"] = settings.llm_base_url
        return ChatOpenAI(**kwargs)

    elif provider == "anthropic":
        try:
            from langchain_anthropic import ChatAnthropic
        except ImportError:
            raise ImportError(
                "langchain-anthropic is required for the 'anthropic' provider. "
                "Install it with: pip install cluster-remediator[anthropic]"
            )
        if settings.llm_api_key:
            kwargs["api_key"] = settings.llm_api_key
        return ChatAnthropic(**kwargs)

    elif provider == "azure_openai":
        from langchain_openai import AzureChatOpenAI

        if settings.llm_api_key:
            kwargs["api_key"] = settings.llm_api_key
        if settings.llm_base_url:
            kwargs["azure_endpoint"] = settings.llm_base_url
        return AzureChatOpenAI(**kwargs)

    elif provider == "ollama":
        kwargs["base_url"] = settings.llm_base_url or "http://localhost:11434/v1"
        kwargs["api_key"] = settings.llm_api_key or "ollama"  # Ollama doesn't need a real key
        return ChatOpenAI(**kwargs)

    else:
        raise ValueError(
            f"Unsupported LLM provider: {provider}. "
            f"Supported: openai, litellm, anthropic, azure_openai, ollama"
        )


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ModelBackend:
    """Opaque ``send(prompt) -> text`` wrapper around a chat model.

    Timeouts surface as ``asyncio.TimeoutError``; any other backend failure
    propagates unchanged so the caller can decide on retries.
    """

    def __init__(self, llm=None, system_prompt: Optional[str] = None):
        self.llm = llm or create_llm()
        self.system_prompt = system_prompt

    async def send(
        self,
        prompt: str,
        timeout: Optional[float] = None,
        kind: str = "investigate",
    ) -> str:
        messages = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(HumanMessage(content=prompt))

        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke(messages),
                timeout=timeout or settings.llm_timeout_seconds,
            )
        except asyncio.TimeoutError:
            remediator_model_calls_total.labels(kind=kind, result="timeout").inc()
            raise
        except Exception:
            remediator_model_calls_total.labels(kind=kind, result="error").inc()
            raise

        remediator_model_calls_total.labels(kind=kind, result="ok").inc()
        return _content_text(response.content)


# Global instance
_model_backend: Optional[ModelBackend] = None


def get_model_backend() -> ModelBackend:
    """Get or create the ModelBackend singleton."""
    global _model_backend
    if _model_backend is None:
        _model_backend = ModelBackend(system_prompt=SYSTEM_PROMPT)
    return _model_backend
