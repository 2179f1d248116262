from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List

class Settings(BaseSettings):
    # Content source
    x_username: str = ""
    x_password: str = ""
    x_email: str = ""
    x_cookies: str = ""  # JSON cookie blob, takes priority over saved sessions
    content_base_url: str = "http://localhost:8080"
    session_dir: str = "tweetcache"
    login_attempts: int = 3
    login_retry_delay: float = 2.0
    request_timeout: float = 10.0

    # Classification oracle
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Cache / broadcast
    redis_url: str = "redis://localhost:6379/0"
    content_cache_ttl: int = 600
    analysis_cache_ttl: int = 3600
    snapshot_ttl: int = 900
    updates_channel: str = "sentiment:updates"
    snapshot_key: str = "sentiment:latest"

    # Scoring
    batch_size: int = 10
    batch_delay: float = 1.0
    min_analysis_score: float = 0.3
    significant_score: float = 0.5
    significant_credibility: float = 0.32
    top_topics: int = 5

    # Targets
    primary_keywords: List[str] = ["new token", "presale", "stealth launch"]
    context_keywords: List[str] = ["crypto", "gem"]
    target_accounts: List[str] = []
    search_count: int = 3
    account_count: int = 20

    # Schedule
    repeat_interval: float = 300.0
    job_attempts: int = 3
    backoff_delay: float = 60.0
    backoff_max_delay: float = 900.0
    shutdown_grace: float = 5.0

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

@lru_cache()
def get_settings():
    return Settings()
