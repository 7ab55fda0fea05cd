"""
Unit Tests: ChatModelProvider, ProviderChain and ModelRouter

Chat models are replaced by langchain-core's FakeListChatModel or by an
AsyncMock whose ainvoke returns a prepared AIMessage.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from cutlist_intake.core.config import Settings
from cutlist_intake.core.exceptions import ConfigurationError, ContentFilterError
from cutlist_intake.llm.prompts import EXTRACTION_PROMPT, ITEM_COUNT_PROMPT
from cutlist_intake.llm.providers import (
    ChatModelProvider,
    ExtractionPayload,
    ExtractionProvider,
    ProviderChain,
    ProviderHandle,
)
from cutlist_intake.llm.router import ModelRouter, Provider, build_default_chain, resolve_provider
from cutlist_intake.schemas.extraction import InputKind
from tests.conftest import items_json


def _llm_returning(message: AIMessage) -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=message)
    return llm


def _handles(*names: str) -> list[ProviderHandle]:
    return [ProviderHandle(name=name, client=MagicMock()) for name in names]


@pytest.mark.unit
class TestExtractionPayload:

    def test_image_size_is_decoded_size(self):
        assert ExtractionPayload("A" * 400).size_bytes == 300

    def test_text_size_is_utf8_length(self):
        assert ExtractionPayload("Tür 600x400", InputKind.TEXT).size_bytes == 12


@pytest.mark.unit
class TestChatModelProvider:

    def test_image_message_carries_data_url(self, payload):
        provider = ChatModelProvider(MagicMock(), name="openai")

        system, human = provider.build_messages(payload)

        assert isinstance(system, SystemMessage)
        assert isinstance(human, HumanMessage)
        text_block, image_block = human.content
        assert text_block == {"type": "text", "text": EXTRACTION_PROMPT}
        assert image_block["image_url"]["url"] == f"data:image/png;base64,{payload.content}"

    def test_text_message_embeds_document(self):
        provider = ChatModelProvider(MagicMock(), name="openai")
        payload = ExtractionPayload("1. Side 720 x 560 x2", InputKind.PDF)

        _, human = provider.build_messages(payload, ITEM_COUNT_PROMPT)

        assert human.content.startswith(ITEM_COUNT_PROMPT)
        assert human.content.endswith("--- DOCUMENT ---\n1. Side 720 x 560 x2")

    async def test_extract_with_fake_chat_model(self, payload):
        llm = FakeListChatModel(responses=[items_json(range(1, 4))])
        provider = ChatModelProvider(llm, name="openai")

        response = await provider.extract(payload)

        assert isinstance(provider, ExtractionProvider)
        assert len(response.items) == 3
        assert response.raw_response_text.startswith('{"items"')

    async def test_extract_reads_usage_metadata(self, payload):
        message = AIMessage(
            content=items_json([1]),
            usage_metadata={"input_tokens": 1_200, "output_tokens": 300, "total_tokens": 1_500},
        )
        provider = ChatModelProvider(_llm_returning(message), name="aws_bedrock")

        response = await provider.extract(payload)

        assert response.tokens_used.input_tokens == 1_200
        assert response.tokens_used.output_tokens == 300
        assert response.tokens_used.total_tokens == 1_500

    async def test_custom_prompt_replaces_default(self, payload):
        llm = _llm_returning(AIMessage(content='{"estimatedCount": 3}'))
        provider = ChatModelProvider(llm, name="openai")

        response = await provider.extract(payload, ITEM_COUNT_PROMPT)

        sent = llm.ainvoke.await_args.args[0]
        assert sent[1].content[0]["text"] == ITEM_COUNT_PROMPT
        assert response.items == []

    async def test_content_blocks_are_flattened(self, payload):
        message = AIMessage(content=[
            {"type": "text", "text": '[{"length": 600,'},
            {"type": "text", "text": ' "width": 400}]'},
        ])
        provider = ChatModelProvider(_llm_returning(message), name="aws_bedrock")

        response = await provider.extract(payload)

        assert response.items == [{"length": 600, "width": 400}]

    async def test_refusal_raises_content_filter_error(self, payload):
        message = AIMessage(content="I'm sorry, I can't assist with identifying this image.")
        provider = ChatModelProvider(_llm_returning(message), name="openai")

        with pytest.raises(ContentFilterError) as exc_info:
            await provider.extract(payload)

        assert exc_info.value.provider == "openai"

    async def test_json_mentioning_sorry_is_not_a_refusal(self, payload):
        message = AIMessage(content='[{"label": "I\'m sorry panel", "length": 600, "width": 400}]')
        provider = ChatModelProvider(_llm_returning(message), name="openai")

        response = await provider.extract(payload)

        assert len(response.items) == 1


@pytest.mark.unit
class TestProviderChain:

    def test_empty_chain_rejected(self):
        with pytest.raises(ConfigurationError):
            ProviderChain([])

    def test_configured_order_by_default(self):
        chain = ProviderChain(_handles("aws_bedrock", "openai", "azure_openai"))

        assert [h.name for h in chain.ordered()] == ["aws_bedrock", "openai", "azure_openai"]
        assert chain.primary.name == "aws_bedrock"

    def test_preferred_provider_moves_to_front(self):
        chain = ProviderChain(_handles("aws_bedrock", "openai", "azure_openai"))

        assert [h.name for h in chain.ordered("openai")] == ["openai", "aws_bedrock", "azure_openai"]

    def test_fallback_disabled_keeps_only_head(self):
        chain = ProviderChain(_handles("aws_bedrock", "openai"))

        assert [h.name for h in chain.ordered("openai", enable_fallback=False)] == ["openai"]
        assert [h.name for h in chain.ordered(enable_fallback=False)] == ["aws_bedrock"]

    def test_unknown_preferred_provider(self):
        chain = ProviderChain(_handles("openai"))

        with pytest.raises(ConfigurationError, match="mistral"):
            chain.ordered("mistral")


@pytest.mark.unit
class TestModelRouter:

    def test_resolve_provider(self):
        assert resolve_provider("aws_bedrock") == Provider.AWS_BEDROCK

        with pytest.raises(ConfigurationError):
            resolve_provider("mistral")

    def test_model_ids_follow_settings(self, test_settings):
        router = ModelRouter(test_settings)

        assert router.model_id_for(Provider.OPENAI) == test_settings.openai_model
        assert router.model_id_for(Provider.AZURE_OPENAI) == test_settings.azure_openai_deployment
        assert router.model_id_for(Provider.AWS_BEDROCK) == test_settings.bedrock_model_id

    def test_default_chain_deduplicates_providers(self):
        cfg = Settings(
            _env_file=None,
            preferred_provider="openai",
            fallback_providers=["openai"],
            openai_api_key="sk-test",
        )

        chain = build_default_chain(cfg)

        assert chain.names == ["openai"]
        assert chain.primary.model == cfg.openai_model
        assert isinstance(chain.primary.client, ChatModelProvider)

    def test_default_settings_build_bedrock_primary_chain(self, monkeypatch):
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
        cfg = Settings(_env_file=None, openai_api_key="sk-test")

        chain = build_default_chain(cfg)

        assert chain.names == ["aws_bedrock", "openai"]
        assert chain.primary.model == cfg.bedrock_model_id
        assert all(isinstance(chain.get(name).client, ChatModelProvider) for name in chain.names)

    def test_default_chain_rejects_unknown_provider(self):
        cfg = Settings(_env_file=None, preferred_provider="mistral", fallback_providers=[])

        with pytest.raises(ConfigurationError):
            build_default_chain(cfg)
