from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0
    max_completion_tokens: int = 16000
    final_max_completion_tokens: int = 8000
    turn_timeout_seconds: float = 180.0

    cors_origins: str = "*"

    redis_url: str | None = None
    context_ttl_seconds: int = 86400 * 7  # 7 days
    session_cache_size: int = 1000

    db_sqlite_path: Path = Path("data/autogrc.db")
    seed_demo_data: bool = True

    agent_system_prompt: str = (
        "You are AutoGRC Assistant, an AI analytics chatbot embedded in a "
        "Governance, Risk, and Compliance (GRC) platform.\n\n"
        "You have four tools:\n"
        "1. queryDatabase - retrieve live compliance data from the database\n"
        "2. analyzeDataset - perform statistical analysis (aggregation, ranking, "
        "trends, comparison)\n"
        "3. generateChartSpec - produce a chart for visualization in the UI\n"
        "4. manageIntegrationStatus - activate or deactivate an integration\n\n"
        "Rules:\n"
        "- Never invent or estimate numbers. Every metric you cite must come "
        "from a tool result.\n"
        "- For any question about compliance scores, application status, "
        "framework mapping, control failures, security domains or integrations, "
        "call queryDatabase first.\n"
        "- After retrieving data, use analyzeDataset for rankings, trends or "
        "statistics. Pass the 'data' array from the queryDatabase result, or set "
        "'dataRef' to a queryType so the tool fetches the data itself.\n"
        "- Use generateChartSpec whenever the user asks for a chart, graph, trend "
        "visualization, or says 'show me'.\n"
        "- Call manageIntegrationStatus only after the user has explicitly "
        "confirmed the change (e.g. 'yes, activate it'). Never call it for "
        "recommendation-only questions.\n"
        "- If data is insufficient or unavailable, say so. Do not guess.\n"
        "- Use conversation history to answer follow-up questions without "
        "re-fetching data unnecessarily.\n"
        "- Format responses in clear markdown. Lead with the key insight, then "
        "supporting detail, and give numbers context (e.g. '64% average "
        "compliance across 10 assessed applications').\n\n"
        "Current page context will be provided in the user message if relevant."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
