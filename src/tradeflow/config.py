from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class AppConfig:
    db_dsn: str
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    deepseek_api_key: str = ""
    groq_api_key: str = ""
    default_ai_provider: str = ""
    functions_base_url: str = ""
    service_secret_key: str = ""
    service_token_expiry_minutes: int = 60
    agent_timeout_seconds: float = 180.0
    agent_max_retries: int = 3
    debate_rounds: int = 2
    stale_threshold_minutes: int = 5
    stale_check_interval_seconds: int = 60
    enable_stale_detection: bool = True
    paper_cash: float = 100_000.0

    @property
    def agent_timeout_ms(self) -> int:
        return int(self.agent_timeout_seconds * 1000)

    @property
    def uses_remote_functions(self) -> bool:
        return bool(self.functions_base_url)


def load_config() -> AppConfig:
    """Load application config from environment variables.

    Loads .env file if present in the current directory.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    return AppConfig(
        db_dsn=os.environ.get("DATABASE_URL", ""),
        openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        deepseek_api_key=os.environ.get("DEEPSEEK_API_KEY", ""),
        groq_api_key=os.environ.get("GROQ_API_KEY", ""),
        default_ai_provider=os.environ.get("DEFAULT_AI_PROVIDER", ""),
        functions_base_url=os.environ.get("FUNCTIONS_BASE_URL", ""),
        service_secret_key=os.environ.get("SERVICE_SECRET_KEY", ""),
        service_token_expiry_minutes=int(os.environ.get("SERVICE_TOKEN_EXPIRY_MINUTES", "60")),
        agent_timeout_seconds=float(os.environ.get("AGENT_TIMEOUT_SECONDS", "180")),
        agent_max_retries=int(os.environ.get("AGENT_MAX_RETRIES", "3")),
        debate_rounds=max(1, int(os.environ.get("DEBATE_ROUNDS", "2"))),
        stale_threshold_minutes=int(os.environ.get("STALE_THRESHOLD_MINUTES", "5")),
        stale_check_interval_seconds=int(os.environ.get("STALE_CHECK_INTERVAL_SECONDS", "60")),
        enable_stale_detection=_flag("ENABLE_STALE_DETECTION", "true"),
        paper_cash=float(os.environ.get("PAPER_CASH", "100000")),
    )
