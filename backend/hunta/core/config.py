from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central settings object.
    Production provides env vars; locally you can use backend/.env.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # API keys
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    SCRAPINGBEE_API_KEY: str = ""
    SERPAPI_API_KEY: str = ""
    EBAY_CLIENT_ID: str = ""
    EBAY_CLIENT_SECRET: str = ""
    EBAY_API_BASE: str = "https://api.ebay.com"
    EBAY_VERIFICATION_TOKEN: str = ""

    # Callers presenting one of these keys skip the daily quota (comma separated)
    PRIVILEGED_API_KEYS: str = ""

    # Pipeline tuning
    SOURCES: str = "ebay,ebay_api,google_shopping"
    PRIMARY_SOURCE: str = "ebay_api"
    NICHE_DOMAINS: str = "cashconverters.co.uk"
    DAILY_SEARCH_LIMIT: int = 1
    PHRASE_DELAY_SECONDS: float = 1.5
    SEARCH_TIMEOUT_SECONDS: float = 120.0
    # Per-call deadlines inside one search; a source that overruns counts as zero results.
    # 5 phrases * SOURCE_TIMEOUT + ENHANCER_TIMEOUT + phrase delays stays under SEARCH_TIMEOUT.
    SOURCE_TIMEOUT_SECONDS: float = 18.0
    ENHANCER_TIMEOUT_SECONDS: float = 15.0
    ENHANCER_CACHE: bool = True

    # Page fetch retries
    FETCH_MAX_RETRIES: int = 5
    FETCH_BASE_DELAY_SECONDS: float = 1.0
    FETCH_RATE_LIMIT_DELAY_SECONDS: float = 10.0

    # Scoring
    MIN_SCORE: float = 0.30
    MAX_RESULTS: int = 30
    SHORT_TITLE_LENGTH: int = 20

    # Logging
    LOG_LEVEL: str = "INFO"

    # Versioning
    APP_VERSION: str = "0.1.0"
    BUILD_ID: str = "dev"

    def source_names(self) -> List[str]:
        return [s.strip() for s in self.SOURCES.split(",") if s.strip()]

    def privileged_keys(self) -> List[str]:
        return [k.strip() for k in self.PRIVILEGED_API_KEYS.split(",") if k.strip()]

    def niche_domains(self) -> List[str]:
        return [d.strip() for d in self.NICHE_DOMAINS.split(",") if d.strip()]


# ✅ MUST EXIST: other modules import this
settings = Settings()
