"""Configuration for the backlog cleaner."""

from pydantic_settings import BaseSettings

from backlog_cleaner.errors import ConfigError


class Settings(BaseSettings):
    """Backlog cleaner settings with BACKLOG_ environment variable prefix."""

    # Jira (issue store)
    jira_base_url: str = ""
    jira_email: str = ""
    jira_api_token: str = ""
    project_key: str = ""
    jira_page_size: int = 100
    jira_timeout_seconds: int = 30
    jira_search_api: str = "classic"  # classic (/search, startAt) or jql (/search/jql, page tokens)

    # Embedding provider (OpenAI-compatible /embeddings)
    embedding_api_key: str = ""
    embedding_base_url: str = "https://api.openai.com/v1"
    embedding_model: str = "text-embedding-3-large"
    embedding_timeout_seconds: int = 60

    # Classification provider
    llm_provider: str = "auto"  # auto, openai, openrouter, anthropic, gemini, generic
    llm_api_key: str = ""  # unified key (auto-detects provider from prefix)
    llm_timeout_seconds: int = 60

    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"

    openrouter_api_key: str = ""
    openrouter_model: str = "openai/gpt-4o"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_base_url: str = "https://api.anthropic.com"

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    generic_api_key: str = ""
    generic_model: str = ""
    generic_base_url: str = ""  # required for generic

    # Vector index (Pinecone)
    pinecone_api_key: str = ""
    pinecone_index_name: str = "masterz-3072"
    pinecone_index_host: str = ""
    pinecone_namespace: str = ""

    # Detection / indexing
    similarity_threshold: float = 0.75
    detection_top_k: int = 5
    index_concurrency: int = 5
    upsert_batch_size: int = 100

    # Retry policy for embedding and classification calls
    retry_attempts: int = 5
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 16.0

    model_config = {"env_prefix": "BACKLOG_"}


settings = Settings()


_TRACKER_FIELDS = ("jira_base_url", "jira_email", "jira_api_token", "project_key")


def missing_tracker_fields(config: Settings | None = None) -> list[str]:
    """Return the names of required Jira settings that are empty."""
    config = config or settings
    return [name for name in _TRACKER_FIELDS if not getattr(config, name).strip()]


def require_tracker_config(config: Settings | None = None) -> Settings:
    """Raise ConfigError unless every Jira credential and the project key are set."""
    config = config or settings
    missing = missing_tracker_fields(config)
    if missing:
        env_names = ", ".join(f"BACKLOG_{name.upper()}" for name in missing)
        raise ConfigError(f"Incomplete Jira configuration. Missing: {env_names}")
    return config
