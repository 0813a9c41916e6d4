from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App
    app_name: str = "Conversation Autopilot"
    debug: bool = False
    api_prefix: str = "/api"
    log_level: str = "INFO"
    log_json: bool = False  # JSON lines instead of plain text

    # Database
    database_url: str = "sqlite+aiosqlite:///./autopilot.db"
    storage_backend: str = "sql"  # "sql" or "memory"

    # Property alias for Alembic compatibility
    @property
    def DATABASE_URL(self) -> str:
        return self.database_url

    # Scheduler
    scheduler_poll_interval_seconds: float = 1.0  # How often the tick runs
    scheduler_cleanup_interval_minutes: int = 60  # How often finished actions are pruned
    action_retention_hours: int = 24  # Failed actions are kept this long

    # Decision engine
    dedup_capacity: int = 500  # Recently handled inbound message ids
    goal_confidence_threshold: int = 70  # Inclusive
    pending_approval_delay_seconds: int = 24 * 60 * 60  # Manual-approval hold
    approval_send_delay_seconds: int = 5
    manual_multi_message_gap_seconds: int = 5
    knowledge_extraction_every: int = 5  # Every Nth handled message
    fatigue_max_reduction: float = 50.0
    fatigue_min_response_rate: float = 30.0
    activity_log_max_entries: int = 500
    thread_context_max_messages: int = 100
    thread_context_max_tokens: int = 3000  # Prompt budget for conversation history
    knowledge_min_confidence: int = 50

    # LLM (drafting, summaries, knowledge extraction)
    openai_api_key: Optional[str] = None  # Set via OPENAI_API_KEY env var
    draft_model: str = "gpt-4o-mini"
    summary_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    draft_max_tokens: int = 500
    summary_max_tokens: int = 1000
    multi_message_split_words: int = 40  # Replies longer than this may be split

    # Send transport (messaging bridge)
    send_url: str = "http://localhost:23373/v1/messages/send"
    send_token: Optional[str] = None  # Set via SEND_TOKEN env var
    send_timeout_seconds: float = 15.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
