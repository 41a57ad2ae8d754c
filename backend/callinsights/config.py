from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Call Insights"

    # Local state (database file, blob store root, logs)
    data_dir: Path = Field(default_factory=lambda: Path("data"))
    blob_dir: Path = Field(default_factory=lambda: Path("data") / "recordings")
    logs_dir: Path = Field(default_factory=lambda: Path("data") / "logs")
    database_url: str = "sqlite:///data/call_insights.db"

    # OpenAI-compatible AI gateway used for transcription and chat completions
    ai_base_url: str = "https://api.openai.com/v1"
    ai_api_key: Optional[str] = None
    transcription_model: str = "whisper-1"
    diarization_model: str = "gpt-4o-mini"
    extraction_model: str = "gpt-4o-mini"

    # Identity provider; GET {auth_url}/user resolves a bearer token to a user
    auth_url: str = "http://localhost:54321/auth/v1"
    auth_api_key: Optional[str] = None

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Per-call timeouts (seconds)
    blob_timeout: float = 60.0
    transcription_timeout: float = 300.0
    chat_timeout: float = 120.0
    auth_timeout: float = 10.0

    max_upload_bytes: int = 100 * 1024 * 1024

    # "background" runs the pipeline in-process after the upload response;
    # "http" POSTs /transcribe on trigger_base_url with the uploader's token
    trigger_mode: str = "background"
    trigger_base_url: str = "http://127.0.0.1:8000"
    trigger_handoff_seconds: float = 2.0

    # Chain insight extraction after a successful transcription run
    auto_extract_insights: bool = True

    class Config:
        env_prefix = "CI_"
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.blob_dir, self.logs_dir]:
            d.mkdir(parents=True, exist_ok=True)
