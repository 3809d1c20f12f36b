from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

import llm_client
from llm_client import LlmTextGenerator, _clean_llm_json_output, _parse_response, build_dictionary_prompt
from models import LlmDictionaryDraft

RAW_DRAFT = """```json
{
  "word": "apple",
  "phonetic": "/ˈæp.əl/",
  "imageThumbnailDescription": "a red apple on a table",
  "meanings": [
    {"partOfSpeech": "noun", "definition": "A round fruit.", "example": "She ate an apple.", "imageDescription": "a girl eating an apple"},
    {"partOfSpeech": "noun", "definition": "", "example": "ignored"}
  ]
}
```"""


def test_clean_strips_fences_and_prefix():
    assert _clean_llm_json_output('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert _clean_llm_json_output('Sure! Here it is: {"a": 1}') == '{"a": 1}'
    assert _clean_llm_json_output('[1, 2]') == '[1, 2]'


def test_parse_response_accepts_camel_case_keys():
    draft = _parse_response(RAW_DRAFT, LlmDictionaryDraft)

    assert isinstance(draft, LlmDictionaryDraft)
    assert draft.primary_image_prompt == "a red apple on a table"
    assert len(draft.meanings) == 1
    assert draft.meanings[0].part_of_speech == "noun"
    assert draft.meanings[0].image_prompt == "a girl eating an apple"


def test_parse_response_reports_bad_json():
    result = _parse_response("not json at all", LlmDictionaryDraft)
    assert isinstance(result, dict)
    assert "error" in result
    assert result["raw_text"] == "not json at all"


def test_prompt_mentions_word_and_limit():
    prompt = build_dictionary_prompt("apple", 3)
    assert "apple" in prompt
    assert "3" in prompt


@pytest.mark.asyncio
async def test_text_generator_truncates_meanings(monkeypatch):
    many = LlmDictionaryDraft.model_validate({
        "word": "set",
        "meanings": [{"definition": f"sense {i}"} for i in range(8)],
    })

    async def fake_generate(**kwargs):
        assert "set" in kwargs["prompt"]
        return many

    monkeypatch.setattr(llm_client, "generate_structured_content", fake_generate)
    draft = await LlmTextGenerator(max_meanings=5).generate("  Set ")

    assert len(draft.meanings) == 5


@pytest.mark.asyncio
async def test_text_generator_returns_none_on_error(monkeypatch):
    async def fake_generate(**kwargs):
        return {"error": "quota exceeded", "raw_text": None}

    monkeypatch.setattr(llm_client, "generate_structured_content", fake_generate)
    assert await LlmTextGenerator().generate("apple") is None


@pytest.mark.asyncio
async def test_unsupported_provider_returns_error():
    result = await llm_client.generate_structured_content("prompt", LlmDictionaryDraft, provider="nope")
    assert result["error"].startswith("Unsupported provider")


@pytest.mark.asyncio
async def test_deepseek_requests_json_and_validates(monkeypatch):
    client = MagicMock()
    message = SimpleNamespace(content=RAW_DRAFT)
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    monkeypatch.setattr(llm_client, "deepseek_client", client)

    draft = await llm_client.generate_structured_content("prompt", LlmDictionaryDraft, provider="deepseek")

    assert isinstance(draft, LlmDictionaryDraft)
    assert draft.word == "apple"
    request = client.chat.completions.create.await_args.kwargs
    assert request["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_deepseek_empty_reply_returns_error(monkeypatch):
    client = MagicMock()
    message = SimpleNamespace(content="   ")
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    monkeypatch.setattr(llm_client, "deepseek_client", client)

    result = await llm_client.generate_structured_content(
        "prompt", LlmDictionaryDraft, provider="deepseek", max_retries=0,
    )

    assert result["error"] == "Empty response received"
