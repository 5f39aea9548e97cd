"""wabridge – Application Configuration.

Pydantic Settings, loaded from a .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    cors_allowed_origins: str = "http://localhost:3000"
    auth_secret: str = "change-me-long-random-secret"

    # --- Storage ---
    database_url: str = ""
    redis_url: str = "redis://127.0.0.1:6379/0"
    media_dir: str = "data/media"
    stats_file: str = "data/analytics.json"
    stats_flush_interval: int = 60
    stats_log_limit: int = 20
    message_retention_days: int = 7

    # --- WhatsApp Web Bridge ---
    bridge_url: str = "http://localhost:3000"
    bridge_api_key: str = ""
    default_country_code: str = "62"
    activation_wait_seconds: float = 10.0
    reconnect_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0

    # --- Pipeline ---
    dedup_window_seconds: int = 300
    auto_reply_delay: float = 1.0
    ai_reply_delay: float = 2.0

    # --- Broadcasts ---
    broadcast_send_delay: float = 3.0
    scheduled_broadcast_interval: int = 30

    # --- AI Replies ---
    ai_history_turns: int = 10
    ai_context_max_chars: int = 5000
    groq_api_key: str = ""
    sambanova_api_key: str = ""
    gemini_api_key: str = ""
    openrouter_api_key: str = ""
    llm_preferred_provider: str = ""  # empty = automatic fallback order
    llm_rate_limit_cooldown: int = 300
    llm_max_tokens: int = 300
    llm_temperature: float = 0.5

    # --- Anti-Spam ---
    spam_window_seconds: int = 60
    spam_max_messages: int = 20
    spam_warn_threshold: int = 15
    spam_auto_reply_throttle_seconds: float = 5.0
    spam_blacklist_seconds: int = 3600
    spam_warning_text: str = (
        "⚠️ Please don't send messages so quickly. Our system limits message "
        "rates to prevent spam. Thank you 🙏"
    )
    spam_block_text: str = (
        "⚠️ Sorry, too many messages were detected. Auto-replies are paused "
        "for 1 hour. Please contact us again later. 🙏"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
