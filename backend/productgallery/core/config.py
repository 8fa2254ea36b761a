from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central settings object.
    Values come from env vars; locally you can use backend/.env.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # API keys
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    GEMINI_MAX_RETRIES: int = 5
    GEMINI_MAX_BACKOFF_SECONDS: float = 20.0
    SERPAPI_API_KEY: str = ""

    # Free product databases
    LOOKUP_TIMEOUT_SECONDS: float = 4.0
    LOOKUP_CACHE_TTL_DAYS: int = 30
    CACHE_PATH: str = ""

    # Gallery pipeline tuning
    GALLERY_BATCH_SIZE: int = 3
    GALLERY_BATCH_PACING_SECONDS: float = 0.5
    VERIFY_MAX_CHECKS: int = 20
    VERIFY_MAX_ADMITTED: int = 5
    GALLERY_TARGET_ACCEPTED: int = 4
    GALLERY_MAX_CANDIDATES: int = 45
    GALLERY_MIN_IMAGE_SIDE: int = 200
    GALLERY_SIZE: int = 4

    LOG_LEVEL: str = "INFO"

    # Versioning
    APP_VERSION: str = "0.1.0"
    BUILD_ID: str = "dev"


# ✅ MUST EXIST: other modules import this
settings = Settings()
