import json

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # LLM providers (any subset may be configured)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_models: str = ""  # comma-separated allow-list; empty = all free models
    groq_api_key: str = ""
    cerebras_api_key: str = ""
    cohere_api_key: str = ""
    pollinations_api_key: str = ""
    default_model: str = ""  # empty = first model discovered at refresh

    # Search providers, tried in this order by the auto chain
    tavily_api_key: str = ""
    brave_api_key: str = ""
    searxng_base_url: str = ""
    search_max_results: int = 5

    # Storage
    database_path: str = "data/ragquery.db"

    # Outbound timeouts (seconds)
    llm_timeout_seconds: float = 120.0
    metadata_timeout_seconds: float = 30.0
    limits_timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 10.0
    search_timeout_seconds: float = 30.0

    # Query pipeline
    max_tool_rounds: int = 3
    max_search_queries: int = 3
    max_sources_per_query: int = 3
    stored_sources_limit: int = 5
    history_max_messages: int = 10
    source_context_chars: int = 1000
    fetch_max_chars: int = 5000
    stream_queue_size: int = 100
    stream_send_timeout_seconds: float = 1.0

    # Background refresh of model list and provider quotas
    model_refresh_interval_seconds: int = 3600

    # JSON object: {"groq": {"minute": 30, "day": 1000}}
    rate_limit_overrides: str = ""

    # App
    app_title: str = "RAG Query"
    public_base_url: str = "http://localhost:8000"
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def openrouter_model_list(self) -> list[str]:
        return [m.strip() for m in self.openrouter_models.split(",") if m.strip()]

    @property
    def rate_limit_override_map(self) -> dict[str, dict[str, int | None]]:
        if not self.rate_limit_overrides.strip():
            return {}
        try:
            parsed = json.loads(self.rate_limit_overrides)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


settings = Settings()
