from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from logging.handlers import RotatingFileHandler

from callinsights.api.recordings import router as recordings_router
from callinsights.api.triggers import router as triggers_router
from callinsights.config import Settings
from callinsights.deps import Container
from callinsights.errors import PipelineError
from callinsights.models.base import build_engine, init_db, session_factory
from callinsights.services.ai_gateway import AIGatewayClient
from callinsights.services.blob_store import BlobStore, LocalBlobStore
from callinsights.services.diarization_service import DiarizationService
from callinsights.services.identity import HttpIdentityProvider, IdentityProvider
from callinsights.services.insight_service import InsightExtractionService
from callinsights.services.pipeline import PipelineOrchestrator
from callinsights.services.recording_service import RecordingService
from callinsights.services.transcription_service import TranscriptionService
from callinsights.services.upload_workflow import HttpTriggerDispatcher


def configure_logging(settings: Settings) -> None:
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.logs_dir / "backend.log"
    root = logging.getLogger()
    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        handler = RotatingFileHandler(str(log_file), maxBytes=5_000_000, backupCount=2)
        handler.setFormatter(logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def build_container(
    settings: Settings,
    *,
    blob_store: Optional[BlobStore] = None,
    gateway: Optional[AIGatewayClient] = None,
    identity: Optional[IdentityProvider] = None,
    engine=None,
) -> Container:
    engine = engine if engine is not None else build_engine(settings)
    make_session = session_factory(engine)
    blob_store = blob_store if blob_store is not None else LocalBlobStore(settings.blob_dir)
    gateway = gateway if gateway is not None else AIGatewayClient(settings)
    identity = identity if identity is not None else HttpIdentityProvider(settings)
    orchestrator = PipelineOrchestrator(
        settings,
        make_session,
        blob_store,
        TranscriptionService(gateway, settings.transcription_model),
        DiarizationService(gateway, settings.diarization_model),
        InsightExtractionService(gateway, settings.extraction_model),
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=make_session,
        blob_store=blob_store,
        gateway=gateway,
        identity=identity,
        orchestrator=orchestrator,
        recordings=RecordingService(make_session, blob_store),
        trigger=HttpTriggerDispatcher(settings) if settings.trigger_mode == "http" else None,
    )


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    settings = settings or (container.settings if container else Settings())
    app = FastAPI(title=settings.app_name, version="0.1.0")
    logger = logging.getLogger("callinsights")

    # Trigger endpoints are called straight from the browser
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        settings.ensure_dirs()
        configure_logging(settings)
        if not hasattr(app.state, "container"):
            app.state.container = build_container(settings)
        init_db(app.state.container.engine)
        logger.info("Started %s", settings.app_name)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        c = getattr(app.state, "container", None)
        if c is None:
            return
        await c.gateway.aclose()
        aclose = getattr(c.identity, "aclose", None)
        if aclose is not None:
            await aclose()
        if c.trigger is not None:
            await c.trigger.aclose()

    if container is not None:
        app.state.container = container

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(triggers_router)
    app.include_router(recordings_router)

    @app.exception_handler(PipelineError)
    async def _pipeline_error_handler(request: Request, exc: PipelineError):  # type: ignore[override]
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request body", "code": "validation_error"},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"success": False, "error": "An unexpected error occurred"})

    return app


app = create_app()


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Call Insights Backend Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")

    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port)
