from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    school_api_base_url: str = Field("http://localhost:5000", alias="SCHOOL_API_BASE_URL")
    # None disables the timeout; the school API has no request deadline of its own.
    school_api_timeout_seconds: Optional[float] = Field(None, alias="SCHOOL_API_TIMEOUT_SECONDS")
    audit_timeout_seconds: float = Field(5.0, alias="AUDIT_TIMEOUT_SECONDS")

    registrant_fetch_limit: int = Field(1000, alias="REGISTRANT_FETCH_LIMIT")
    header_match_threshold: float = Field(0.7, alias="HEADER_MATCH_THRESHOLD")
    excel_max_rows: int = Field(2000, alias="EXCEL_MAX_ROWS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    cors_allow_origins: List[str] = Field(["*"], alias="CORS_ALLOW_ORIGINS")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
