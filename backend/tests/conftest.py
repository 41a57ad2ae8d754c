from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from callinsights.config import Settings
from callinsights.errors import AuthError, BlobStoreError
from callinsights.main import build_container, create_app
from callinsights.models.base import init_db, session_factory
from callinsights.models.recording import Recording, RecordingStatus, blob_path_for
from callinsights.services.ai_gateway import AIGatewayClient
from callinsights.services.identity import AuthenticatedUser

USER_ID = "user-alice"
OTHER_USER_ID = "user-bob"
TOKENS = {"token-alice": USER_ID, "token-bob": OTHER_USER_ID}
AUTH = {"Authorization": "Bearer token-alice"}

Reply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def chat_reply(content: Optional[str] = None, tool_arguments: Optional[Any] = None) -> httpx.Response:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_arguments is not None:
        arguments = tool_arguments if isinstance(tool_arguments, str) else json.dumps(tool_arguments)
        message["tool_calls"] = [
            {"id": "call_1", "type": "function", "function": {"name": "extract_insights", "arguments": arguments}}
        ]
    return httpx.Response(200, json={"choices": [{"index": 0, "message": message}]})


def transcription_reply(text: str, segments: List[Dict[str, Any]], duration: Optional[float] = None) -> httpx.Response:
    body: Dict[str, Any] = {"text": text, "segments": segments}
    if duration is not None:
        body["duration"] = duration
    return httpx.Response(200, json=body)


SEGMENTS = [
    {"id": 0, "start": 0.0, "end": 4.0, "text": " What slowed your team down last quarter?", "tokens": [1, 2]},
    {"id": 1, "start": 4.2, "end": 9.5, "text": " Manual reporting ate ten hours a week.", "tokens": [3]},
    {"id": 2, "start": 9.6, "end": 12.25, "text": " Automating it cut that to one hour.", "tokens": [4]},
]
TRANSCRIPT = " ".join(s["text"].strip() for s in SEGMENTS)

DIARIZED = [
    {"speaker": "Speaker 1", "start": 0.0, "end": 4.0, "text": "What slowed your team down last quarter?"},
    {"speaker": "Speaker 2", "start": 4.2, "end": 12.25, "text": "Manual reporting ate ten hours a week. Automating it cut that to one hour."},
]

INSIGHTS = {
    "insights": [
        {"type": "pain_point", "text": "Manual reporting ate ten hours a week.", "speaker": "Speaker 2", "confidence": 0.9},
        {"type": "proof", "text": "Automating it cut that to one hour.", "speaker": "Speaker 2", "confidence": 0.8},
        {"type": "joke", "text": "Why did the chicken cross the road?", "speaker": "Speaker 1", "confidence": 0.5},
    ]
}


class FakeUpstream:
    """OpenAI-compatible gateway double served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.transcription: Reply = transcription_reply(TRANSCRIPT, SEGMENTS)
        self.diarization: Reply = chat_reply("```json\n" + json.dumps(DIARIZED) + "\n```")
        self.extraction: Reply = chat_reply(tool_arguments=INSIGHTS)
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/audio/transcriptions"):
            return self._resolve(self.transcription, request)
        if request.url.path.endswith("/chat/completions"):
            body = json.loads(request.content)
            return self._resolve(self.extraction if "tools" in body else self.diarization, request)
        return httpx.Response(404)

    @staticmethod
    def _resolve(reply: Reply, request: httpx.Request) -> httpx.Response:
        if callable(reply):
            return reply(request)
        return reply

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


class FakeIdentity:
    async def get_user(self, access_token: str) -> AuthenticatedUser:
        user_id = TOKENS.get(access_token)
        if user_id is None:
            raise AuthError("Unauthorized")
        return AuthenticatedUser(id=user_id, access_token=access_token)


class InMemoryBlobStore:
    """Dict-backed blob store with the same error contract as the local one."""

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}

    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        if path in self.blobs:
            raise BlobStoreError(f"Blob already exists: {path}")
        self.blobs[path] = data

    async def get(self, path: str) -> bytes:
        try:
            return self.blobs[path]
        except KeyError as exc:
            raise BlobStoreError(f"Failed to read blob {path}") from exc

    async def delete(self, path: str) -> bool:
        return self.blobs.pop(path, None) is not None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        blob_dir=tmp_path / "blobs",
        logs_dir=tmp_path / "logs",
        database_url="sqlite://",
        ai_base_url="https://ai.test/v1",
        ai_api_key="test-key",
        auth_url="https://auth.test/auth/v1",
        trigger_base_url="https://api.test",
    )


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    return engine


@pytest.fixture
def make_session(engine) -> Callable[[], Session]:
    return session_factory(engine)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def gateway(settings, upstream) -> AIGatewayClient:
    return AIGatewayClient(settings, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def container(settings, engine, blob_store, gateway):
    return build_container(settings, blob_store=blob_store, gateway=gateway, identity=FakeIdentity(), engine=engine)


@pytest.fixture
def orchestrator(container):
    return container.orchestrator


@pytest.fixture
def client(settings, container):
    from fastapi.testclient import TestClient

    return TestClient(create_app(settings, container))


@pytest.fixture
def add_recording(make_session, blob_store):
    """Insert a recording (and its blob) directly, bypassing the uploader."""

    def _add(
        recording_id: str = "3f1c2a9e-5b7d-4c1e-9a2b-0d4e6f8a1b2c",
        status: RecordingStatus = RecordingStatus.TRANSCRIBING,
        user_id: str = USER_ID,
        with_blob: bool = True,
        **fields: Any,
    ) -> Recording:
        filename = fields.pop("filename", "call.mp3")
        path = blob_path_for(user_id, recording_id, filename)
        if with_blob:
            blob_store.blobs[path] = b"ID3fake-audio"
        recording = Recording(
            id=recording_id,
            user_id=user_id,
            filename=filename,
            file_path=path,
            file_size=13,
            status=status.value,
            **fields,
        )
        with make_session() as session:
            session.add(recording)
            session.commit()
            session.refresh(recording)
        return recording

    return _add


@pytest.fixture
def load_recording(make_session):
    def _load(recording_id: str) -> Optional[Recording]:
        with make_session() as session:
            return session.get(Recording, recording_id)

    return _load
