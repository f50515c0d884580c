"""
Configuration file for the rank drop analyzer
"""
import os
from dataclasses import dataclass
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AnalyzerConfig:
    """Configuration settings for the analysis pipeline"""

    # Browser settings
    headless: bool = True
    stealth_mode: bool = True
    timeout: int = 30
    max_browser_contexts: int = 3

    # Rate limiting
    min_delay: float = 1.0
    max_delay: float = 3.0
    browser_search_min_delay: float = 10.0
    browser_search_max_delay: float = 20.0

    # User agents for rotation
    user_agents: List[str] = None

    # Rank drop detection
    comparison_days: int = 7
    drop_threshold: float = 2.0
    keyword_drop_threshold: int = 10
    data_freshness_lag_days: int = 2
    keyword_window_days: int = 30

    # Keyword selection
    max_keywords: int = 5
    max_competitors: int = 10
    max_competitors_to_scrape: int = 3
    min_impressions: int = 1

    # Search providers
    serper_api_key: Optional[str] = None
    prefer_serper_api: bool = True
    search_retry_count: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Scraping
    scrape_retries: int = 3
    scrape_retry_delay: float = 2.0

    # LLM providers
    llm_provider: str = "groq"
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.1-70b-versatile"
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "google/gemini-flash-1.5"
    qwen_api_key: Optional[str] = None
    qwen_model: str = "qwen-turbo"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash-lite"
    llm_timeout: int = 60
    llm_max_tokens: int = 4000
    llm_temperature: float = 0.7
    locale: str = "ja"

    # Search Console
    gsc_access_token: Optional[str] = None
    gsc_row_limit: int = 10000

    # Cache
    cache_ttl_seconds: int = 3600
    cache_max_size: int = 1000

    # Pipeline time budget
    step_time_budget: float = 60.0
    step_safety_margin: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_format: str = "%(asctime)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        if self.user_agents is None:
            self.user_agents = [
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
            ]

    @classmethod
    def from_env(cls) -> "AnalyzerConfig":
        """Build a configuration from environment variables"""
        return cls(
            serper_api_key=os.getenv("SERPER_API_KEY"),
            prefer_serper_api=_env_bool("PREFER_SERPER_API", True),
            llm_provider=os.getenv("LLM_PROVIDER", "groq").lower(),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            qwen_api_key=os.getenv("QWEN_API_KEY"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash-lite"),
            gsc_access_token=os.getenv("GSC_ACCESS_TOKEN"),
            headless=_env_bool("HEADLESS", True),
            step_time_budget=float(os.getenv("STEP_TIME_BUDGET", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_dir=os.getenv("LOG_DIR", "logs"),
            locale=os.getenv("ANALYSIS_LOCALE", "ja"),
        )

# Default configuration instance
config = AnalyzerConfig.from_env()
