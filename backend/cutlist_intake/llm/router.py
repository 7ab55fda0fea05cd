"""
LLM Model Router: Provider → LangChain Chat Model

Maps a configured provider name to the LangChain chat model that serves it:

    OPENAI        → ChatOpenAI           (langchain-openai)
    AZURE_OPENAI  → AzureChatOpenAI      (langchain-openai, same models, own endpoint)
    AWS_BEDROCK   → ChatBedrock          (langchain-aws)

The router is pure Python (no I/O, no network). Provider SDK imports are
deferred to build time.

build_default_chain(settings) wires `preferred_provider` + `fallback_providers`
into the ProviderChain the orchestrator iterates.
"""

from __future__ import annotations

import logging
from enum import Enum

from langchain_core.language_models.chat_models import BaseChatModel

from cutlist_intake.core.config import Settings, get_settings
from cutlist_intake.core.exceptions import ConfigurationError
from cutlist_intake.llm.providers import ChatModelProvider, ProviderChain, ProviderHandle

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    OPENAI       = "openai"
    AZURE_OPENAI = "azure_openai"
    AWS_BEDROCK  = "aws_bedrock"


def resolve_provider(name: str) -> Provider:
    try:
        return Provider(name)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported provider '{name}'. Expected one of {[p.value for p in Provider]}"
        ) from None


class ModelRouter:
    """
    Usage::

        router = ModelRouter(settings)
        llm    = router.build_llm(Provider.OPENAI)
    """

    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or get_settings()

    def model_id_for(self, provider: Provider) -> str:
        if provider == Provider.OPENAI:
            return self._cfg.openai_model
        if provider == Provider.AZURE_OPENAI:
            return self._cfg.azure_openai_deployment
        return self._cfg.bedrock_model_id

    def build_llm(self, provider: Provider) -> BaseChatModel:
        """Instantiate the LangChain chat model for `provider`."""
        if provider == Provider.OPENAI:
            return self._build_openai()

        if provider == Provider.AZURE_OPENAI:
            return self._build_azure_openai()

        if provider == Provider.AWS_BEDROCK:
            return self._build_bedrock()

        raise ConfigurationError(f"Unsupported provider: {provider}")   # pragma: no cover

    # -----------------------------------------------------------------------
    # Provider-specific builders
    # -----------------------------------------------------------------------

    def _build_openai(self) -> BaseChatModel:
        from langchain_openai import ChatOpenAI
        cfg = self._cfg
        return ChatOpenAI(
            model=cfg.openai_model,
            api_key=cfg.openai_api_key or None,
            temperature=cfg.llm_temperature,
            max_tokens=cfg.llm_max_tokens,
        )

    def _build_azure_openai(self) -> BaseChatModel:
        from langchain_openai import AzureChatOpenAI
        cfg = self._cfg
        return AzureChatOpenAI(
            azure_deployment=cfg.azure_openai_deployment,
            azure_endpoint=cfg.azure_openai_endpoint,
            api_key=cfg.azure_openai_api_key or None,   # type: ignore[arg-type]
            api_version=cfg.azure_openai_api_version,
            temperature=cfg.llm_temperature,
            max_tokens=cfg.llm_max_tokens,
        )

    def _build_bedrock(self) -> BaseChatModel:
        from langchain_aws import ChatBedrock
        cfg = self._cfg
        return ChatBedrock(
            model_id=cfg.bedrock_model_id,
            region_name=cfg.aws_region,
            model_kwargs={
                "temperature": cfg.llm_temperature,
                "max_tokens":  cfg.llm_max_tokens,
            },
        )


def build_default_chain(cfg: Settings | None = None) -> ProviderChain:
    """`[preferred_provider, *fallback_providers]`, duplicates removed, order kept."""
    cfg = cfg or get_settings()
    router = ModelRouter(cfg)

    names: list[str] = []
    for name in [cfg.preferred_provider, *cfg.fallback_providers]:
        if name and name not in names:
            names.append(name)

    handles = []
    for name in names:
        provider = resolve_provider(name)
        handles.append(ProviderHandle(
            name=provider.value,
            client=ChatModelProvider(router.build_llm(provider), name=provider.value),
            model=router.model_id_for(provider),
        ))
        logger.info("ModelRouter | registered provider=%s model=%s", provider.value, handles[-1].model)

    return ProviderChain(handles)
