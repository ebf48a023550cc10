import json

import pytest

from codelore_mcp.enrichment import CORRECTION_MESSAGE, MetadataEnricher, parse_metadata
from codelore_mcp.errors import MetadataExtractionError

from conftest import ScriptedChat


VALID = json.dumps(
    [
        {"key": "Language", "value": "java"},
        {"key": "responsibility", "value": "Stores files"},
    ]
)


@pytest.mark.asyncio
async def test_valid_first_response_needs_one_call():
    chat = ScriptedChat([VALID])
    enricher = MetadataEnricher(chat)

    meta = await enricher.get_metadata_for_source_code("ctx", "A.java", "class A {}")

    assert meta == {"language": "java", "responsibility": "Stores files"}
    assert len(chat.calls) == 1
    prompt = chat.calls[0][0].content
    assert "ctx" in prompt
    assert "Source code filename: A.java" in prompt
    assert "class A {}" in prompt


@pytest.mark.asyncio
async def test_invalid_then_valid_returns_retry_result():
    chat = ScriptedChat(["Sure! Here is the metadata: [", VALID])
    enricher = MetadataEnricher(chat)

    meta = await enricher.get_metadata_for_source_code("ctx", "A.java", "class A {}")

    assert meta["responsibility"] == "Stores files"
    assert len(chat.calls) == 2
    retry = chat.calls[1]
    assert [m.role for m in retry] == ["user", "assistant", "user"]
    assert retry[0] == chat.calls[0][0]
    assert retry[1].content == "Sure! Here is the metadata: ["
    assert retry[2].content == CORRECTION_MESSAGE


@pytest.mark.asyncio
async def test_two_invalid_responses_raise_with_last_response():
    chat = ScriptedChat(["nope", "still nope"])
    enricher = MetadataEnricher(chat)

    with pytest.raises(MetadataExtractionError) as excinfo:
        await enricher.get_metadata_for_source_code("ctx", "A.java", "class A {}")

    assert excinfo.value.raw_response == "still nope"
    assert len(chat.calls) == 2


@pytest.mark.asyncio
async def test_json_that_is_not_an_array_is_retried():
    chat = ScriptedChat(['{"key": "language", "value": "java"}', VALID])
    enricher = MetadataEnricher(chat)

    meta = await enricher.get_metadata_for_source_code("ctx", "A.java", "class A {}")

    assert meta["language"] == "java"
    assert len(chat.calls) == 2


@pytest.mark.asyncio
async def test_missing_responsibility_is_filled_in():
    chat = ScriptedChat([json.dumps([{"key": "language", "value": "yaml"}])])
    enricher = MetadataEnricher(chat)

    meta = await enricher.get_metadata_for_source_code("ctx", "app.yaml", "a: 1")

    assert meta == {"language": "yaml", "responsibility": "unknown"}


def test_parse_metadata_merges_duplicate_keys():
    raw = json.dumps(
        [
            {"key": "entities", "value": "A"},
            {"key": "ENTITIES", "value": "B"},
            {"key": "entities", "value": "A"},
            {"key": "package", "value": None},
            {"key": None, "value": "x"},
        ]
    )

    assert parse_metadata(raw) == {"entities": "A, B"}


def test_parse_metadata_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_metadata('["language", "java"]')
