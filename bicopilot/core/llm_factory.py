"""
LLM / embedding construction.

All chat models are built through ``create_llm`` from ``settings.llm_provider``
and ``settings.llm_model``; provider alias "gemini" maps to "google".
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Literal, Optional, Union

from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI

from bicopilot.config import settings
from bicopilot.core.embedding import EmbeddingClient, HashingEmbeddingClient
from bicopilot.smart_logger import SmartLogger

LLMProvider = Literal["openai", "google", "openai_compatible"]
ChatModel = Union[ChatOpenAI, ChatGoogleGenerativeAI]


def _normalize_provider(value: str) -> LLMProvider:
    v = (value or "").strip().lower()
    if v in {"google", "gemini", "genai"}:
        return "google"
    if v == "openai":
        return "openai"
    if v in {"openai_compatible", "openai-compatible", "openai_compat"}:
        return "openai_compatible"
    raise ValueError(
        "Unsupported llm_provider={!r}. Allowed: 'openai', 'google' (alias: 'gemini'), "
        "'openai_compatible'.".format(value)
    )


def _filter_init_kwargs(cls: type, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Pass only the init keys the installed LangChain model declares."""
    model_fields = getattr(cls, "model_fields", None)
    if isinstance(model_fields, dict) and model_fields:
        allowed = set(model_fields.keys())
        aliases = {f.alias for f in model_fields.values() if getattr(f, "alias", None)}
        allowed |= aliases
        return {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    return {k: v for k, v in kwargs.items() if v is not None}


def _require_api_key(*, provider: LLMProvider) -> str:
    if provider == "openai":
        key = (settings.openai_api_key or "").strip()
        if not key or key.lower() == "dummy":
            raise ValueError("OPENAI_API_KEY is missing (llm_provider=openai)")
        return key
    if provider == "openai_compatible":
        key = (settings.openai_compatible_api_key or settings.openai_api_key or "").strip()
        if not key or key.lower() == "dummy":
            raise ValueError("OPENAI_COMPATIBLE_API_KEY is missing (llm_provider=openai_compatible)")
        return key
    key = (settings.google_api_key or "").strip()
    if not key or key.lower() == "dummy":
        raise ValueError("GOOGLE_API_KEY is missing (llm_provider=google)")
    return key


@lru_cache(maxsize=1)
def _get_openai_async_client() -> AsyncOpenAI:
    return AsyncOpenAI(api_key=_require_api_key(provider="openai"))


def create_embedding_client():
    """OpenAI embeddings when configured, otherwise the local hashing embedder."""
    provider = (settings.embedding_provider or "").strip().lower()
    if provider == "openai":
        return EmbeddingClient(_get_openai_async_client())
    if provider == "local":
        return HashingEmbeddingClient(settings.embedding_dimension)
    raise NotImplementedError(f"embedding_provider={provider!r} is not supported (use 'openai' or 'local').")


@dataclass(frozen=True)
class LLMHandle:
    llm: ChatModel
    provider: LLMProvider
    model: str


def create_llm(
    *,
    purpose: str,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    provider_url: Optional[str] = None,
) -> LLMHandle:
    """
    Create a LangChain chat model using unified settings.

    Args:
        purpose: for logging/diagnostics (not used for routing)
        provider/model: override settings.llm_provider/settings.llm_model when provided
    """
    prov: LLMProvider = _normalize_provider(provider or settings.llm_provider)
    mdl = (model or settings.llm_model or "").strip()
    if not mdl:
        raise ValueError("llm_model is empty")
    temp = float(settings.llm_temperature if temperature is None else temperature)
    max_tokens = int(max_output_tokens or settings.llm_max_output_tokens)

    if prov in {"openai", "openai_compatible"}:
        api_key = _require_api_key(provider=prov)
        base_url = (provider_url if provider_url is not None else settings.llm_provider_url or "").strip()
        if prov == "openai_compatible" and not base_url:
            raise ValueError("llm_provider_url is required when llm_provider=openai_compatible")
        kwargs = _filter_init_kwargs(
            ChatOpenAI,
            {
                "model": mdl,
                "model_name": mdl,
                "api_key": api_key,
                "openai_api_key": api_key,
                "temperature": temp,
                "max_tokens": max_tokens,
                "base_url": base_url or None,
                "openai_api_base": base_url or None,
                "streaming": True,
            },
        )
        llm: ChatModel = ChatOpenAI(**kwargs)
    else:
        kwargs = _filter_init_kwargs(
            ChatGoogleGenerativeAI,
            {
                "model": mdl,
                "google_api_key": _require_api_key(provider=prov),
                "temperature": temp,
                "max_output_tokens": max_tokens,
            },
        )
        llm = ChatGoogleGenerativeAI(**kwargs)

    SmartLogger.log(
        "INFO",
        "core.llm.created",
        category="core.llm",
        params={"provider": prov, "model": mdl, "purpose": purpose},
    )
    return LLMHandle(llm=llm, provider=prov, model=mdl)
