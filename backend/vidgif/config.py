import logging
import os
import tempfile

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    FFMPEG_BIN: str = "ffmpeg"
    FFPROBE_BIN: str = "ffprobe"
    UPLOAD_DIR: str = os.path.join(tempfile.gettempdir(), "vidgif-uploads")
    MAX_UPLOAD_MB: int = 1024
    ALLOWED_EXT: tuple = ("mp4", "mov", "avi", "mkv", "webm", "m4v", "mpg", "mpeg", "wmv", "flv", "3gp", "gif")
    DEFAULT_WIDTH: int = 480
    DEFAULT_FPS: int = 15
    JOB_TTL_SECONDS: float = 600.0
    # 0 keeps conversions unbounded
    MAX_CONCURRENT_JOBS: int = 0
    CORS_ORIGINS: list[str] = ["*"]
    HOST: str = "127.0.0.1"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()


def configure_logging(level: str | None = None):
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
