from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from callinsights.errors import UpstreamError
from callinsights.services.ai_gateway import AIGatewayClient

logger = logging.getLogger("callinsights.transcription")


@dataclass
class TranscriptSegment:
    start: float
    end: float
    text: str


@dataclass
class TranscriptionResult:
    text: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    duration: Optional[float] = None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_transcription(payload: Dict[str, Any]) -> TranscriptionResult:
    """Parse a verbose_json transcription response.

    Segments missing timestamps are skipped; extra per-segment fields
    (tokens, logprobs, ...) are ignored.
    """
    text = payload.get("text")
    if not isinstance(text, str):
        raise UpstreamError("Transcription response has no text")
    segments: List[TranscriptSegment] = []
    raw_segments = payload.get("segments") or []
    if isinstance(raw_segments, list):
        for raw in raw_segments:
            if not isinstance(raw, dict):
                continue
            start = _as_float(raw.get("start"))
            end = _as_float(raw.get("end"))
            if start is None or end is None:
                continue
            segments.append(TranscriptSegment(start=start, end=end, text=str(raw.get("text") or "")))
    return TranscriptionResult(text=text, segments=segments, duration=_as_float(payload.get("duration")))


def resolve_duration(result: TranscriptionResult) -> float:
    """Service-reported duration, else the last segment's end, else 0."""
    if result.duration:
        return result.duration
    if result.segments:
        return result.segments[-1].end
    return 0.0


class TranscriptionService:
    def __init__(self, gateway: AIGatewayClient, model: str) -> None:
        self._gateway = gateway
        self._model = model

    async def transcribe(self, audio: bytes, filename: str) -> TranscriptionResult:
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        logger.info("Transcribing %s (%d bytes) with %s", filename, len(audio), self._model)
        payload = await self._gateway.transcribe_audio(audio, filename, model=self._model, content_type=content_type)
        result = parse_transcription(payload)
        logger.info("Transcription returned %d segments", len(result.segments))
        return result
