from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.engine import Engine
from sqlmodel import Session

from callinsights.config import Settings
from callinsights.services.ai_gateway import AIGatewayClient
from callinsights.services.blob_store import BlobStore
from callinsights.services.identity import AuthenticatedUser, IdentityProvider, bearer_token
from callinsights.services.pipeline import PipelineOrchestrator
from callinsights.services.recording_service import RecordingService
from callinsights.services.upload_workflow import HttpTriggerDispatcher


@dataclass
class Container:
    """Process-wide collaborators, built once in ``create_app``."""

    settings: Settings
    engine: Engine
    session_factory: Callable[[], Session]
    blob_store: BlobStore
    gateway: AIGatewayClient
    identity: IdentityProvider
    orchestrator: PipelineOrchestrator
    recordings: RecordingService
    # Set when uploads hand off to /transcribe over HTTP
    trigger: Optional[HttpTriggerDispatcher] = None


def get_container(request: Request) -> Container:
    return request.app.state.container


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
) -> AuthenticatedUser:
    return await container.identity.get_user(bearer_token(authorization))
