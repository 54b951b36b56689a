import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Render Server"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    host: str = "0.0.0.0"
    port: int = 3030
    log_level: Literal["debug", "info", "warning", "error"] = "info"

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
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"

    # External frame renderer (composition -> numbered image files)
    frame_renderer_command: str = "render-frames"
    frame_image_format: Literal["jpeg", "png"] = "jpeg"
    frame_filename_prefix: str = "element-"
    frame_min_digits: int = 4

    # Scratch space, one directory per job
    render_temp_dir: str = "/tmp/render-server"

    # Audio
    render_audio_sample_rate: int = 48000
    render_audio_bitrate: str = "128k"
    default_duration_ms: int = 10000

    # Progress weights (must sum to 1)
    extraction_weight: float = 0.5
    encoding_weight: float = 0.5
    # Share of the encoding phase given to pass 1 of a two-pass encode
    two_pass_first_pass_end: int = 45

    # Capability detection
    memory_constrained_threshold_mb: int = 8192
    capability_probe_timeout_s: float = 10.0

    # Asset fetch
    asset_fetch_timeout_s: float = 60.0

    # Subprocess handling
    encoder_error_tail_chars: int = 500
    process_kill_timeout_s: float = 5.0

    # Cleanup scheduling (seconds)
    frames_cleanup_delay_s: float = 300.0
    save_cleanup_delay_s: float = 5.0
    cancel_cleanup_delay_s: float = 1.0
    job_retention_s: float = 3600.0

    # Event channel
    event_queue_size: int = 100

    # Failed jobs keep at most this many characters of the error
    max_error_message_chars: int = 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
