"""
VulnWatch - Configuration
"""
import os
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "VulnWatch"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/vulnwatch.db"

    # Paths
    BASE_DIR: Path = Path(__file__).parent.parent
    DATA_DIR: Path = BASE_DIR / "data"
    CATALOG_SEED_PATH: Optional[Path] = BASE_DIR / "backend" / "seed" / "catalog_seed.json"

    # Lifecycle gates (deployment-tunable)
    MIN_PRESENCE_CONFIDENCE: float = 0.5
    MIN_FIX_CONFIDENCE: float = 0.3
    AUTO_APPROVE_FIX_CONFIDENCE: float = 0.8
    MAX_FIX_ATTEMPTS: int = 3

    # Resilience gateway
    GATEWAY_FAILURE_THRESHOLD: int = 5
    GATEWAY_FAILURE_RATE: float = 0.5
    GATEWAY_WINDOW_SIZE: int = 20
    GATEWAY_MIN_CALLS: int = 10
    GATEWAY_COOLDOWN_SECONDS: float = 30.0
    GATEWAY_CALL_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_RETRIES: int = 3
    HOST_RATE_PER_SECOND: float = 1.3  # GitHub: 5000 req/hour authenticated
    HOST_BURST: int = 10
    INFERENCE_RATE_PER_SECOND: float = 0.5
    INFERENCE_BURST: int = 2
    BOUNTY_RATE_PER_SECOND: float = 0.5
    BOUNTY_BURST: int = 5
    CATALOG_RATE_PER_SECOND: float = 0.16  # NVD: 5 requests / 30s without a key
    CATALOG_BURST: int = 5

    # Repository host
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TOKEN: Optional[str] = os.getenv("GITHUB_TOKEN")
    GITHUB_WEBHOOK_SECRET: Optional[str] = os.getenv("GITHUB_WEBHOOK_SECRET")
    COMMITS_PER_PAGE: int = 30
    PR_BRANCH_PREFIX: str = "vulnwatch/fix"

    # Inference backend
    ANALYSIS_BACKEND: str = "pattern"  # pattern | llm
    ANTHROPIC_API_KEY: Optional[str] = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    DEFAULT_LLM_PROVIDER: str = "anthropic"
    DEFAULT_LLM_MODEL: str = "claude-sonnet-4-20250514"
    LLM_MAX_TOKENS: int = 4096

    # Bounty platforms
    ALGORA_API_URL: str = "https://console.algora.io/api"
    ALGORA_API_KEY: Optional[str] = os.getenv("ALGORA_API_KEY")
    POLAR_API_URL: str = "https://api.polar.sh"
    POLAR_API_TOKEN: Optional[str] = os.getenv("POLAR_API_TOKEN")
    GITPAY_API_URL: str = "https://gitpay.me"
    GITPAY_API_KEY: Optional[str] = os.getenv("GITPAY_API_KEY")
    BOUNTY_WEBHOOK_SECRET: Optional[str] = os.getenv("BOUNTY_WEBHOOK_SECRET")
    MIN_BOUNTY_AMOUNT: float = 50.0
    MAX_BOUNTY_AMOUNT: Optional[float] = 200.0
    SUPPORTED_LANGUAGES: list = ["Java", "TypeScript", "JavaScript", "Python"]

    # Catalog
    NVD_API_KEY: Optional[str] = os.getenv("NVD_API_KEY")
    CATALOG_SYNC_DAYS: int = 30
    CATALOG_SYNC_INTERVAL_SECONDS: int = 86400

    # Scheduling
    ENABLE_SCHEDULER: bool = True
    PIPELINE_INTERVAL_SECONDS: int = 300
    INGEST_CONCURRENCY: int = 4

    # CORS
    CORS_ORIGINS: list = ["http://localhost:3000", "http://127.0.0.1:3000"]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

# Ensure directories exist
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
