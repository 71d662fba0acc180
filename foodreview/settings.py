from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FOODREVIEW_", extra="ignore")

    # Repository used as the database
    github_owner: str = "elo613"
    github_repo: str = "FoodReview"
    github_branch: str = "main"
    api_base_url: str = "https://api.github.com"
    raw_base_url: str = "https://raw.githubusercontent.com"

    reviews_path: str = "reviews.json"
    media_dir: str = "images"

    # Encrypted credential blob: fetched from the repo unless a bundled copy is given
    credential_blob_path: str = "pat.enc.json"
    credential_blob_file: Optional[str] = None

    # Timeouts (seconds)
    request_timeout_s: float = 15.0
    upload_timeout_s: float = 60.0
    decode_timeout_s: float = 10.0
    file_read_timeout_s: float = 30.0

    # "auto", "desktop" or "mobile"
    device_class: str = "auto"
    user_agent: Optional[str] = None
    device_memory_gb: Optional[float] = None

    log_level: str = "INFO"


settings = Settings()
