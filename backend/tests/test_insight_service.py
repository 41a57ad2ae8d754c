from __future__ import annotations

import json

import httpx
import pytest

from callinsights.errors import ParseError, QuotaExhaustedError, RateLimitedError, UpstreamError
from callinsights.services.insight_service import (
    ExtractedInsight,
    InsightExtractionService,
    attach_time_references,
    parse_extraction_response,
    validate_insights,
)

from conftest import INSIGHTS, chat_reply


def test_validate_drops_unknown_types_and_empty_text():
    items = [
        {"type": "quote", "text": "Clarity beats cleverness.", "speaker": "Speaker 1", "confidence": 0.7},
        {"type": "joke", "text": "Knock knock.", "speaker": "Speaker 2", "confidence": 0.9},
        {"type": "solution", "text": "   ", "speaker": "Speaker 2", "confidence": 0.9},
        "not an object",
    ]

    result = validate_insights(items)

    assert [(i.type, i.text) for i in result] == [("quote", "Clarity beats cleverness.")]


@pytest.mark.parametrize(
    "raw, expected",
    [(0.42, 0.42), ("0.7", 0.7), (1, 1.0), (1.5, 0.0), (-0.1, 0.0), (None, 0.0), ("high", 0.0), (True, 0.0)],
)
def test_validate_confidence(raw, expected):
    item = {"type": "proof", "text": "Revenue doubled.", "speaker": "Speaker 1"}
    if raw is not None:
        item["confidence"] = raw

    (result,) = validate_insights([item])

    assert result.confidence == pytest.approx(expected)


def test_validate_normalises_type_and_speaker():
    (result,) = validate_insights([{"type": " Pain_Point ", "text": "Churn is high.", "speaker": "", "confidence": 0.5}])

    assert result.type == "pain_point"
    assert result.speaker is None


def test_parse_prefers_tool_call_arguments():
    completion = chat_reply(content="ignored", tool_arguments=INSIGHTS).json()

    assert parse_extraction_response(completion) == INSIGHTS["insights"]


def test_parse_falls_back_to_fenced_content():
    completion = chat_reply("```json\n" + json.dumps({"insights": []}) + "\n```").json()

    assert parse_extraction_response(completion) == []


@pytest.mark.parametrize(
    "completion",
    [
        chat_reply(tool_arguments="{not json").json(),
        chat_reply(tool_arguments={"items": []}).json(),
        chat_reply("Here are some insights: none really.").json(),
        chat_reply(None).json(),
        {"choices": []},
    ],
)
def test_parse_rejects_unexpected_shapes(completion):
    with pytest.raises(ParseError):
        parse_extraction_response(completion)


def test_attach_time_references_prefers_matching_speaker():
    segments = [
        {"speaker": "Speaker 1", "start": 0.0, "end": 4.0, "text": "We lost deals. We lost deals."},
        {"speaker": "Speaker 2", "start": 4.0, "end": 8.0, "text": "Yes,   we LOST deals to slow onboarding."},
    ]
    insights = [
        ExtractedInsight(type="pain_point", text="we lost deals", speaker="Speaker 2", confidence=0.9),
        ExtractedInsight(type="quote", text="Never mentioned anywhere", speaker="Speaker 1", confidence=0.9),
    ]

    attach_time_references(insights, segments)

    assert (insights[0].start_time, insights[0].end_time) == (4.0, 8.0)
    assert insights[1].start_time is None and insights[1].end_time is None


async def test_extract_sends_forced_tool_call(gateway, upstream, settings):
    service = InsightExtractionService(gateway, settings.extraction_model)

    result = await service.extract("Speaker 1: hello")

    assert [i.type for i in result] == ["pain_point", "proof"]
    body = json.loads(upstream.requests[0].content)
    assert body["model"] == settings.extraction_model
    assert body["tool_choice"] == {"type": "function", "function": {"name": "extract_insights"}}
    assert body["tools"][0]["function"]["parameters"]["properties"]["insights"]["items"]["properties"]["type"]["enum"] == [
        "quote",
        "pain_point",
        "solution",
        "proof",
    ]
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][1]["content"].endswith("Speaker 1: hello")
    assert upstream.requests[0].headers["Authorization"] == "Bearer test-key"


@pytest.mark.parametrize(
    "status, error",
    [(429, RateLimitedError), (402, QuotaExhaustedError), (500, UpstreamError), (400, UpstreamError)],
)
async def test_extract_maps_upstream_status(gateway, upstream, settings, status, error):
    upstream.extraction = httpx.Response(status, json={"error": "nope"})
    service = InsightExtractionService(gateway, settings.extraction_model)

    with pytest.raises(error) as info:
        await service.extract("transcript")

    assert info.value.status_code == status
