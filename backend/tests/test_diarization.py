from __future__ import annotations

import json

import httpx

from callinsights.services.diarization_service import (
    DiarizationService,
    SpeakerSegment,
    coerce_segments,
    fallback_segments,
)
from callinsights.services.transcription_service import TranscriptSegment

from conftest import chat_reply


def seg(start, end, text):
    return TranscriptSegment(start=start, end=end, text=text)


def test_fallback_splits_on_question_and_pause():
    result = fallback_segments([seg(0, 1, "Hi?"), seg(1, 2, "Fine thanks"), seg(5, 6, "Next topic")])

    assert [s.speaker for s in result] == ["Speaker 1", "Speaker 2", "Speaker 1"]
    assert [s.text for s in result] == ["Hi?", "Fine thanks", "Next topic"]
    assert [(s.start, s.end) for s in result] == [(0, 1), (1, 2), (5, 6)]


def test_fallback_extends_open_segment():
    result = fallback_segments([seg(0, 1, " We ship weekly."), seg(1.5, 3, " Mostly on Tuesdays. ")])

    assert result == [SpeakerSegment("Speaker 1", 0, 3, "We ship weekly. Mostly on Tuesdays.")]


def test_fallback_pause_of_exactly_two_seconds_does_not_split():
    result = fallback_segments([seg(0, 1, "One"), seg(3, 4, "Two")])

    assert len(result) == 1


def test_fallback_with_no_segments_uses_whole_transcript():
    result = fallback_segments([], "hello world")

    assert [s.to_dict() for s in result] == [{"speaker": "Speaker 1", "start": 0.0, "end": 0.0, "text": "hello world"}]


def test_fallback_only_uses_two_labels():
    segments = [seg(i * 10, i * 10 + 1, f"Turn {i}") for i in range(5)]

    speakers = {s.speaker for s in fallback_segments(segments)}

    assert speakers == {"Speaker 1", "Speaker 2"}


def test_coerce_segments_applies_defaults():
    result = coerce_segments([{"text": "Hello"}, {"speaker": "Speaker 2", "start": "3.5", "end": 2, "text": None}, "junk"])

    assert result == [
        SpeakerSegment("Speaker 1", 0.0, 0.0, "Hello"),
        SpeakerSegment("Speaker 2", 3.5, 3.5, ""),
        SpeakerSegment("Speaker 1", 0.0, 0.0, ""),
    ]


def test_coerce_segments_rejects_empty_or_non_list():
    assert coerce_segments([]) is None
    assert coerce_segments({"speaker": "Speaker 1"}) is None


async def test_diarize_uses_model_labels(gateway, upstream, settings):
    upstream.diarization = chat_reply(
        "```json\n"
        + json.dumps(
            [
                {"speaker": "Speaker 1", "start": 0, "end": 1, "text": "Hi?"},
                {"speaker": "Speaker 2", "start": 1, "end": 2, "text": "Fine thanks"},
            ]
        )
        + "\n```"
    )
    service = DiarizationService(gateway, settings.diarization_model)

    result = await service.diarize("Hi? Fine thanks", [seg(0, 1, "Hi?"), seg(1, 2, "Fine thanks")])

    assert [s.speaker for s in result] == ["Speaker 1", "Speaker 2"]
    request = upstream.requests[0]
    body = json.loads(request.content)
    assert body["model"] == settings.diarization_model
    assert body["temperature"] == 0.3
    assert '"text": "Fine thanks"' in body["messages"][0]["content"]


async def test_diarize_falls_back_on_upstream_error(gateway, upstream, settings):
    upstream.diarization = httpx.Response(500, json={"error": "boom"})
    service = DiarizationService(gateway, settings.diarization_model)

    result = await service.diarize("", [seg(0, 1, "Hi?"), seg(1, 2, "Fine thanks")])

    assert [s.speaker for s in result] == ["Speaker 1", "Speaker 2"]


async def test_diarize_falls_back_on_unusable_content(gateway, upstream, settings):
    service = DiarizationService(gateway, settings.diarization_model)
    segments = [seg(0, 1, "Hi?"), seg(1, 2, "Fine thanks")]

    for reply in (chat_reply(None), chat_reply("I cannot tell who is speaking."), chat_reply("[]")):
        upstream.diarization = reply
        result = await service.diarize("", segments)
        assert len(result) == 2
        assert result[1].speaker == "Speaker 2"


async def test_diarize_falls_back_on_network_error(gateway, upstream, settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.diarization = refuse
    service = DiarizationService(gateway, settings.diarization_model)

    result = await service.diarize("", [seg(0, 1, "One")])

    assert result == [SpeakerSegment("Speaker 1", 0, 1, "One")]


async def test_diarize_skips_model_without_segments(gateway, upstream, settings):
    service = DiarizationService(gateway, settings.diarization_model)

    result = await service.diarize("hello world", [])

    assert result == [SpeakerSegment("Speaker 1", 0.0, 0.0, "hello world")]
    assert upstream.requests == []
