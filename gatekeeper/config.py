"""Configuration settings for the gatekeeper ledger."""

from pathlib import Path

from pydantic_settings import BaseSettings

# Bundled reference data (policy + registry)
_DATA_DIR = Path(__file__).parent / "data"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ledger store
    database_url: str = f"sqlite+aiosqlite:///{Path.cwd() / 'gatekeeper.db'}"
    sqlite_busy_timeout: float = 30.0

    # Reference data
    policy_path: Path = _DATA_DIR / "autonomy_v1.json"
    registry_path: Path = _DATA_DIR / "registry_v1.json"

    # Dispatch
    dispatch_timeout: float = 120.0  # seconds
    llm_mode: str = "stub"  # stub | bad_stub | http
    llm_base_url: str = "https://api.moonshot.ai/v1"
    llm_model: str = "kimi-k2-turbo-preview"
    llm_api_key: str | None = None
    llm_max_tokens: int = 2048

    # Operator identity used when none is given
    default_actor: str = "cos"

    log_level: str = "INFO"

    class Config:
        env_prefix = "GATEKEEPER_"
        env_file = ".env"
        extra = "ignore"


# Global settings instance (CLI wiring only)
settings = Settings()
