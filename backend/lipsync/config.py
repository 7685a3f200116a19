import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Lipsync Studio API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:5173,http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Pipe-separated (for Cloud Run compatibility)
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # File Upload
    max_upload_size_mb: int = 500
    allowed_video_types: list[str] = ["video/mp4", "video/quicktime", "video/x-msvideo", "video/webm"]

    # Working directory for uploads, extracted clips, processed clips and exports
    temp_storage_path: str = "/tmp/lipsync-storage"
    # Base URL the remote service uses to fetch locally exposed files
    public_base_url: str = "http://localhost:8000"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Canonical profile used when originals and replacements must be re-encoded together
    normalize_width: int = 1280
    normalize_height: int = 720
    normalize_fps: int = 24
    normalize_video_bitrate: str = "3000k"
    normalize_audio_bitrate: str = "128k"
    normalize_audio_sample_rate: int = 48000

    # Segments
    segment_min_duration_s: float = 0.5
    segment_max_duration_s: float = 60.0

    # Sessions are evicted when idle for longer than this
    session_timeout_seconds: int = 3600
    session_sweep_interval_seconds: int = 300

    # Queue
    max_concurrent_segments: int = 4

    # Kling AI lip-sync API
    klingai_access_key: str = ""
    klingai_secret_key: str = ""
    klingai_api_endpoint: str = "https://api-singapore.klingai.com"
    klingai_request_timeout_s: float = 30.0
    klingai_download_timeout_s: float = 120.0
    klingai_token_ttl_s: int = 1800
    klingai_token_leeway_s: int = 5
    klingai_poll_interval_submitted_s: float = 3.0
    klingai_poll_interval_processing_s: float = 10.0
    # Wait budget per task: floor + per_second * segment duration
    klingai_timeout_floor_s: float = 300.0
    klingai_timeout_per_second_s: float = 30.0

    # Google Cloud Storage (used to expose files to the remote service in production)
    use_cloud_storage: bool = False
    gcs_bucket_name: str = "lipsync-transfer"
    gcs_project_id: str = ""
    gcs_key_prefix: str = "lipsync"
    signed_url_expiration_s: int = 7200

    # Export
    export_grace_period_s: float = 60.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
