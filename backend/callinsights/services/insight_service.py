from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from callinsights.errors import ParseError
from callinsights.models.insight import INSIGHT_TYPES, Insight, InsightType
from callinsights.services.ai_gateway import AIGatewayClient, first_message
from callinsights.services.llm_json import parse_json_lenient

logger = logging.getLogger("callinsights.insights")

EXTRACTION_PROMPT = """You are an expert content strategist analyzing a client call transcript.
Identify and extract the following types of insights:

1. QUOTE - Memorable, quotable statements that show expertise or unique perspective
2. PAIN_POINT - Client frustrations, challenges, or problems mentioned
3. SOLUTION - Strategies, methods, or approaches discussed that solved problems
4. PROOF - Results, metrics, case studies, or social proof mentioned

For each insight, provide:
- type: quote | pain_point | solution | proof
- text: The exact or paraphrased content (1-3 sentences, compelling and self-contained)
- speaker: Which speaker said this (use "Speaker 1", "Speaker 2", etc. or infer from context)
- confidence: Your confidence this is a valuable insight (0.0-1.0)

Extract 5-15 high-quality insights that would make excellent LinkedIn content.
Focus on unique perspectives, concrete numbers, emotional moments, and actionable advice."""

TOOL_NAME = "extract_insights"

EXTRACTION_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Extract valuable insights from the transcript",
        "parameters": {
            "type": "object",
            "properties": {
                "insights": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "enum": [t.value for t in InsightType]},
                            "text": {"type": "string"},
                            "speaker": {"type": "string"},
                            "confidence": {"type": "number"},
                        },
                        "required": ["type", "text", "speaker", "confidence"],
                    },
                },
            },
            "required": ["insights"],
        },
    },
}


@dataclass
class ExtractedInsight:
    type: str
    text: str
    speaker: Optional[str]
    confidence: float
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def to_row(self, recording_id: str, user_id: str) -> Insight:
        return Insight(
            recording_id=recording_id,
            user_id=user_id,
            type=self.type,
            text=self.text,
            speaker=self.speaker,
            confidence=self.confidence,
            start_time=self.start_time,
            end_time=self.end_time,
            is_starred=False,
        )


def _confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not 0.0 <= number <= 1.0:
        return 0.0
    return number


def validate_insights(raw_items: Sequence[Any]) -> List[ExtractedInsight]:
    accepted: List[ExtractedInsight] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        kind = str(item.get("type") or "").strip().lower()
        if kind not in INSIGHT_TYPES:
            logger.info("Dropping insight with unknown type %r", kind)
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        speaker = item.get("speaker")
        speaker = str(speaker).strip() if speaker is not None and str(speaker).strip() else None
        accepted.append(ExtractedInsight(type=kind, text=text, speaker=speaker, confidence=_confidence(item.get("confidence"))))
    return accepted


def parse_extraction_response(completion: Dict[str, Any]) -> List[Any]:
    """Pull the raw insight list out of a chat completion.

    Prefers the forced tool call; falls back to JSON in the message content.
    """
    message = first_message(completion)
    payload: Any = None
    tool_calls = message.get("tool_calls")
    if isinstance(tool_calls, list) and tool_calls:
        call = tool_calls[0] if isinstance(tool_calls[0], dict) else {}
        function = call.get("function") if isinstance(call.get("function"), dict) else {}
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            payload = arguments
        elif isinstance(arguments, str):
            try:
                payload = json.loads(arguments)
            except ValueError as exc:
                raise ParseError("Tool call arguments are not valid JSON") from exc
    else:
        content = message.get("content")
        if isinstance(content, str) and content.strip():
            try:
                payload = parse_json_lenient(content)
            except ValueError as exc:
                raise ParseError("Model response is not valid JSON") from exc

    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("insights"), list):
        return payload["insights"]
    raise ParseError("Model response did not match the insight schema")


_WS_RE = re.compile(r"\s+")


def _normalise(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().lower()


def attach_time_references(insights: List[ExtractedInsight], speaker_segments: Sequence[Dict[str, Any]]) -> None:
    """Fill start/end from the speaker segment that contains the insight text verbatim."""
    if not speaker_segments:
        return
    normalised = [(_normalise(str(seg.get("text") or "")), seg) for seg in speaker_segments]
    for insight in insights:
        needle = _normalise(insight.text)
        matches = [seg for text, seg in normalised if needle and needle in text]
        if not matches:
            continue
        preferred = [seg for seg in matches if seg.get("speaker") == insight.speaker]
        seg = (preferred or matches)[0]
        insight.start_time = float(seg.get("start") or 0.0)
        insight.end_time = float(seg.get("end") or 0.0)


class InsightExtractionService:
    def __init__(self, gateway: AIGatewayClient, model: str) -> None:
        self._gateway = gateway
        self._model = model

    async def extract(self, transcript_text: str) -> List[ExtractedInsight]:
        """Run the extraction call.

        Raises RateLimitedError, QuotaExhaustedError, UpstreamError or
        ParseError; an empty list is a valid result.
        """
        completion = await self._gateway.chat_completion(
            [
                {"role": "system", "content": EXTRACTION_PROMPT},
                {"role": "user", "content": f"Here is the transcript to analyze:\n\n{transcript_text}"},
            ],
            model=self._model,
            tools=[EXTRACTION_TOOL],
            tool_choice={"type": "function", "function": {"name": TOOL_NAME}},
        )
        raw_items = parse_extraction_response(completion)
        insights = validate_insights(raw_items)
        logger.info("Model returned %d insights, %d accepted", len(raw_items), len(insights))
        return insights
