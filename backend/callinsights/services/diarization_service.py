"""Speaker attribution for transcript segments.

The primary path asks the chat model to label speakers. Whenever that path
fails or yields nothing usable, a deterministic turn-taking heuristic is used
instead. The heuristic only alternates between two labels, so calls with
three or more speakers get mislabelled on that path.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from callinsights.errors import PipelineError
from callinsights.services.ai_gateway import AIGatewayClient, first_message
from callinsights.services.llm_json import parse_json_lenient
from callinsights.services.transcription_service import TranscriptSegment

logger = logging.getLogger("callinsights.diarization")

DEFAULT_SPEAKER = "Speaker 1"
PAUSE_THRESHOLD_SECONDS = 2.0


@dataclass
class SpeakerSegment:
    speaker: str
    start: float
    end: float
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_diarization_prompt(segments: Sequence[TranscriptSegment]) -> str:
    segment_data = [{"start": s.start, "end": s.end, "text": s.text.strip()} for s in segments]
    return (
        "You are analyzing a conversation transcript to identify different speakers.\n\n"
        "Here are the transcript segments with timestamps:\n"
        f"{json.dumps(segment_data, indent=2, ensure_ascii=False)}\n\n"
        "Analyze the conversation and identify which segments belong to which speaker based on:\n"
        "1. Turn-taking patterns (questions followed by answers)\n"
        "2. Speaking style and vocabulary differences\n"
        "3. Topic shifts and conversational flow\n"
        "4. Interview/conversation dynamics (one person often asks more questions)\n\n"
        "Return a JSON array where each item has:\n"
        '- speaker: "Speaker 1", "Speaker 2", etc.\n'
        "- start: start time in seconds\n"
        "- end: end time in seconds\n"
        "- text: the transcript text\n\n"
        "Combine consecutive segments from the same speaker into a single segment.\n"
        "Return ONLY valid JSON, no other text."
    )


def _number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    # NaN compares unequal to itself
    return number if number == number else 0.0


def coerce_segments(parsed: Any) -> Optional[List[SpeakerSegment]]:
    """Normalise model output; None when it is not a non-empty list."""
    if not isinstance(parsed, list) or not parsed:
        return None
    result: List[SpeakerSegment] = []
    for item in parsed:
        if not isinstance(item, dict):
            item = {}
        start = _number(item.get("start"))
        end = max(_number(item.get("end")), start)
        result.append(
            SpeakerSegment(
                speaker=str(item.get("speaker") or DEFAULT_SPEAKER),
                start=start,
                end=end,
                text=str(item.get("text") or ""),
            )
        )
    return result


def fallback_segments(segments: Sequence[TranscriptSegment], transcript_text: str = "") -> List[SpeakerSegment]:
    """Heuristic diarization: flip between two speakers on a pause or a question."""
    if not segments:
        return [SpeakerSegment(speaker=DEFAULT_SPEAKER, start=0.0, end=0.0, text=transcript_text)]

    result: List[SpeakerSegment] = []
    current_speaker = 1
    current: Optional[SpeakerSegment] = None

    for segment in segments:
        text = segment.text.strip()
        if current is None:
            current = SpeakerSegment(f"Speaker {current_speaker}", segment.start, segment.end, text)
            continue
        is_pause = (segment.start - current.end) > PAUSE_THRESHOLD_SECONDS
        is_question = current.text.strip().endswith("?")
        if is_pause or is_question:
            result.append(current)
            current_speaker = 2 if current_speaker == 1 else 1
            current = SpeakerSegment(f"Speaker {current_speaker}", segment.start, segment.end, text)
        else:
            current.end = segment.end
            current.text = f"{current.text} {text}" if current.text else text

    result.append(current)
    return result


class DiarizationService:
    def __init__(self, gateway: AIGatewayClient, model: str, temperature: float = 0.3) -> None:
        self._gateway = gateway
        self._model = model
        self._temperature = temperature

    async def diarize(self, transcript_text: str, segments: Sequence[TranscriptSegment]) -> List[SpeakerSegment]:
        """Label segments with speakers. Never raises for upstream or parse problems."""
        if not segments:
            return fallback_segments(segments, transcript_text)

        try:
            completion = await self._gateway.chat_completion(
                [{"role": "user", "content": build_diarization_prompt(segments)}],
                model=self._model,
                temperature=self._temperature,
            )
        except PipelineError as exc:
            logger.warning("Speaker diarization call failed (%s), using fallback", exc.code)
            return fallback_segments(segments, transcript_text)

        content = first_message(completion).get("content")
        if not isinstance(content, str) or not content.strip():
            logger.warning("No content in diarization response, using fallback")
            return fallback_segments(segments, transcript_text)

        try:
            parsed = parse_json_lenient(content)
        except ValueError:
            logger.warning("Unparsable diarization response, using fallback")
            return fallback_segments(segments, transcript_text)

        labelled = coerce_segments(parsed)
        if labelled is None:
            logger.warning("Empty diarization response, using fallback")
            return fallback_segments(segments, transcript_text)
        logger.info("Diarization produced %d speaker segments", len(labelled))
        return labelled
